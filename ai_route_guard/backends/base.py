"""
Inference backend interface.

Every backend returns one normalized result shape, either a Completion or
a BackendError, so the routing core never inspects provider responses.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Union

from ai_route_guard.core.pricing import TokenUsage

PROBE_PROMPT = "Hello, are you working?"


class BackendErrorKind(Enum):
    """Transient failure kinds reported by backends."""
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    MALFORMED_RESPONSE = "malformed-response"
    RATE_LIMITED = "rate-limited"


@dataclass(frozen=True)
class Completion:
    """Successful completion."""
    content: str
    usage: Optional[TokenUsage] = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class BackendError:
    """Failed completion."""
    kind: BackendErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


BackendResult = Union[Completion, BackendError]


class InferenceBackend(Protocol):
    """Anything that can turn a prompt into a BackendResult."""

    def invoke(self, prompt: str, options: Dict[str, Any], timeout: float) -> BackendResult:
        ...


def close_backend(backend: InferenceBackend) -> None:
    """Release a backend's client, for backends that hold one."""
    close = getattr(backend, "close", None)
    if close is not None:
        close()
