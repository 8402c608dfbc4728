"""
Completion routing and project generation for FreeForge
"""

from .transport import CompletionTransport
from .fallback import Combo, FallbackOrchestrator
from .phased_generator import FilePlan, PhasedGenerator
from .service import GenerationService
from .supervisor import RetrySupervisor

__all__ = [
    "CompletionTransport",
    "Combo",
    "FallbackOrchestrator",
    "FilePlan",
    "PhasedGenerator",
    "GenerationService",
    "RetrySupervisor",
]
