"""Orchestrator package - coordinates upload workflows."""
from .core import UploadOrchestrator
from .fallback import FallbackRouter
from .retry import RetryCoordinator
from .workflows import UploadWorkflow

__all__ = ["UploadOrchestrator", "FallbackRouter", "RetryCoordinator", "UploadWorkflow"]
