"""
Inference backends.

Adapters that turn provider APIs into the normalized Completion or
BackendError result the routing core consumes.
"""

from .base import (
    PROBE_PROMPT,
    BackendError,
    BackendErrorKind,
    BackendResult,
    Completion,
    InferenceBackend,
)

__all__ = [
    "PROBE_PROMPT",
    "BackendError",
    "BackendErrorKind",
    "BackendResult",
    "Completion",
    "InferenceBackend",
]
