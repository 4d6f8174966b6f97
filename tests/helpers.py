"""
Test doubles and sample data shared across the test modules.
"""

from collections import deque
from typing import Any, Dict

from ai_route_guard.backends.base import BackendError, BackendErrorKind, Completion
from ai_route_guard.config.loader import BackendConfig
from ai_route_guard.core.types import BackendDescriptor, BackendKind, BackendStatus

# 76 with the context below (complex), 61 without it (medium, code-like)
COMPLEX_PROMPT = "Analyze why this function {x} returns 42 and create a story about it:"
COMPLEX_CONTEXT = tuple(f"earlier message {i}" for i in range(8))
# 32: medium, no code, recommends a zero-cost backend
MEDIUM_PROMPT = "Explain how photosynthesis works in plants"
SIMPLE_PROMPT = "hi"


class ScriptedBackend:
    """Fake backend: returns queued results first, then succeeds or fails."""

    def __init__(self, content: str = "ok", fail: bool = False, usage=None):
        self.content = content
        self.fail = fail
        self.usage = usage
        self.error_kind = BackendErrorKind.UNAVAILABLE
        self.script = deque()
        self.calls = []
        self.closed = False

    def queue(self, *results) -> None:
        self.script.extend(results)

    def invoke(self, prompt: str, options: Dict[str, Any], timeout: float):
        self.calls.append((prompt, dict(options), timeout))
        if self.script:
            result = self.script.popleft()
            if isinstance(result, Exception):
                raise result
            return result
        if self.fail:
            return BackendError(self.error_kind, "scripted failure")
        return Completion(self.content, self.usage)

    def close(self) -> None:
        self.closed = True

    @property
    def prompts(self):
        return [call[0] for call in self.calls]


def make_descriptor(
    backend_id: str,
    kind: BackendKind,
    cost: float = 0.0,
    success_rate: float = 100.0,
    latency: float = 100.0,
    status: BackendStatus = BackendStatus.HEALTHY,
) -> BackendDescriptor:
    return BackendDescriptor(
        id=backend_id,
        name=backend_id.title(),
        kind=kind,
        endpoint=f"http://{backend_id}.test",
        cost_per_call=cost,
        status=status,
        success_rate=success_rate,
        avg_latency_ms=latency,
    )


def router_config_data(**overrides) -> Dict[str, Any]:
    data = {
        "premium_backend": "premium",
        "backends": [
            {"id": "premium", "kind": "premium", "protocol": "openai",
             "endpoint": "https://api.openai.test/v1", "model": "gpt-4o", "cost_per_call": 0.03},
            {"id": "economy", "kind": "local-economy", "protocol": "openai-compatible",
             "endpoint": "http://economy.test", "cost_per_call": 0.002},
            {"id": "zero", "kind": "local-zero-cost", "protocol": "ollama",
             "endpoint": "http://zero.test", "cost_per_call": 0.0},
        ],
    }
    data.update(overrides)
    return data


class BackendFarm:
    """Backend factory handing out one ScriptedBackend per configured id."""

    def __init__(self):
        self.backends: Dict[str, ScriptedBackend] = {}

    def __call__(self, config: BackendConfig) -> ScriptedBackend:
        backend = self.backends.get(config.id)
        if backend is None:
            backend = ScriptedBackend(content=f"from {config.id}")
            self.backends[config.id] = backend
        return backend

    def __getitem__(self, backend_id: str) -> ScriptedBackend:
        return self.backends[backend_id]

    def reset_calls(self) -> None:
        for backend in self.backends.values():
            backend.calls.clear()



class RecordingNotifier:
    """Keeps alerts in memory."""

    def __init__(self):
        self.sent = []
        self.closed = False

    def notify(self, title: str, body: str) -> None:
        self.sent.append((title, body))

    def close(self) -> None:
        self.closed = True
