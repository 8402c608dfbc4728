"""
Core configuration, data model and health tracking for FreeForge
"""

from .config import Config
from .health import HealthTracker
from .models import (
    ChatMessage,
    GenerationOptions,
    GenerationRequest,
    FilePlanEntry,
    GeneratedFile,
    ProjectArtifact,
)

__all__ = [
    "Config",
    "HealthTracker",
    "ChatMessage",
    "GenerationOptions",
    "GenerationRequest",
    "FilePlanEntry",
    "GeneratedFile",
    "ProjectArtifact",
]
