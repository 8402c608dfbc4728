"""
FreeForge: resilient multi-file project generation on top of an unreliable
pool of free-tier LLM completion endpoints.

This package routes completions across credentials and models with
health-aware fallback, consumes streamed output under layered timeouts,
and recovers structured project artifacts from near-JSON model output.
"""

__version__ = "0.1.0"
__author__ = "FreeForge Team"

from .core import *

__all__ = [
    "__version__",
    "__author__",
]
