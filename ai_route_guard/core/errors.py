"""
Exception hierarchy for the routing core.
"""

from typing import List, TYPE_CHECKING

if TYPE_CHECKING:
    from .dispatch import AttemptRecord


class RouteGuardError(Exception):
    """Base class for routing errors."""


class UnknownBackendError(RouteGuardError):
    """Raised when a backend id is not registered."""
    def __init__(self, backend_id: str):
        super().__init__(f"Unknown backend: {backend_id}")
        self.backend_id = backend_id


class DispatchFailedError(RouteGuardError):
    """Raised for interactive calls when every backend attempt failed.

    Carries the full failover trace so callers can see which backends
    were tried and why each one failed.
    """
    def __init__(self, message: str, trace: "List[AttemptRecord]"):
        super().__init__(message)
        self.trace = list(trace)


class RetryQueueError(RouteGuardError):
    """Raised for invalid retry queue operations."""


class UnknownTaskKindError(RetryQueueError):
    """Raised when no payload type or executor exists for a task kind."""
    def __init__(self, task_kind: str):
        super().__init__(f"Unknown task kind: {task_kind}")
        self.task_kind = task_kind


class PayloadValidationError(RetryQueueError):
    """Raised when a task payload fails validation."""
