"""
Backend health registry.

Tracks registered backends, probes them on a fixed interval and keeps a
rolling window of live-call outcomes per backend.

Status transitions are binary with lag: a failed probe marks a backend
offline, and the next successful probe or live call brings it back to
healthy. There is no half-open state. Optionally a backend whose windowed
success rate falls below a floor is marked degraded.
"""

import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Optional, Tuple

import structlog

from ai_route_guard.backends.base import PROBE_PROMPT, InferenceBackend, close_backend

from .errors import UnknownBackendError
from .scheduling import Clock, KeyedLocks, SystemClock
from .types import BackendDescriptor, BackendStatus

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    backend_id: str
    healthy: bool
    latency_ms: float
    error: Optional[str] = None


@dataclass(frozen=True)
class BackendMetrics:
    """Window statistics for one backend."""
    calls: int
    successes: int
    failures: int
    success_rate: float
    avg_latency_ms: float


class _Window:
    """Fixed-size rolling window of (success, latency_ms) samples."""

    def __init__(self, size: int):
        self.samples: Deque[Tuple[bool, float]] = deque(maxlen=size)

    def add(self, success: bool, latency_ms: float) -> None:
        self.samples.append((success, latency_ms))

    def metrics(self) -> BackendMetrics:
        calls = len(self.samples)
        successes = sum(1 for ok, _ in self.samples if ok)
        if calls == 0:
            return BackendMetrics(0, 0, 0, 0.0, 0.0)
        return BackendMetrics(
            calls=calls,
            successes=successes,
            failures=calls - successes,
            success_rate=successes / calls * 100,
            avg_latency_ms=sum(latency for _, latency in self.samples) / calls,
        )


class HealthRegistry:
    """Registry of backends and their rolling health statistics.

    Updates to the same backend are serialized with a per-backend lock;
    readers always receive copies of the descriptors.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        window_size: int = 100,
        probe_timeout: float = 10.0,
        degraded_below: Optional[float] = None,
        degraded_min_samples: int = 10,
    ):
        """Initialize the registry.

        Args:
            clock: Time source for probe timestamps
            window_size: Number of outcomes kept per backend
            probe_timeout: Timeout in seconds for a health probe
            degraded_below: Success-rate floor below which a backend is
                marked degraded; None disables degradation
            degraded_min_samples: Samples required before degrading
        """
        self._clock = clock or SystemClock()
        self._window_size = window_size
        self._probe_timeout = probe_timeout
        self._degraded_below = degraded_below
        self._degraded_min_samples = degraded_min_samples

        self._descriptors: Dict[str, BackendDescriptor] = {}
        self._backends: Dict[str, InferenceBackend] = {}
        self._windows: Dict[str, _Window] = {}
        self._locks = KeyedLocks()

    def register(self, descriptor: BackendDescriptor, backend: InferenceBackend) -> BackendDescriptor:
        """Register a backend; idempotent by id.

        Re-registering an existing id refreshes its metadata and client but
        keeps its status and rolling statistics.
        """
        with self._locks(descriptor.id):
            replaced = self._backends.get(descriptor.id)
            existing = self._descriptors.get(descriptor.id)
            if existing is None:
                # Rolling statistics always come from the window, which starts empty
                stored = replace(descriptor, success_rate=0.0, avg_latency_ms=0.0)
                self._windows[descriptor.id] = _Window(self._window_size)
                log.info(
                    "health.backend_registered",
                    backend_id=descriptor.id,
                    kind=descriptor.kind.value,
                    endpoint=descriptor.endpoint,
                )
            else:
                stored = replace(
                    descriptor,
                    status=existing.status,
                    success_rate=existing.success_rate,
                    avg_latency_ms=existing.avg_latency_ms,
                    last_probe_at=existing.last_probe_at,
                    active=True,
                )
                log.info("health.backend_reregistered", backend_id=descriptor.id)
            self._descriptors[descriptor.id] = stored
            self._backends[descriptor.id] = backend
        if replaced is not None and replaced is not backend:
            close_backend(replaced)
        return replace(stored)

    def deregister(self, backend_id: str) -> None:
        """Deactivate a backend. Descriptors are never deleted."""
        with self._locks(backend_id):
            descriptor = self._require(backend_id)
            descriptor.active = False
            descriptor.status = BackendStatus.OFFLINE
        log.info("health.backend_deactivated", backend_id=backend_id)

    def get(self, backend_id: str) -> BackendDescriptor:
        with self._locks(backend_id):
            return replace(self._require(backend_id))

    def find(self, backend_id: str) -> Optional[BackendDescriptor]:
        with self._locks(backend_id):
            descriptor = self._descriptors.get(backend_id)
            return replace(descriptor) if descriptor is not None else None

    def backend(self, backend_id: str) -> InferenceBackend:
        if backend_id not in self._backends:
            raise UnknownBackendError(backend_id)
        return self._backends[backend_id]

    def close(self) -> None:
        """Close every backend client; deactivated backends included."""
        for backend in list(self._backends.values()):
            close_backend(backend)

    def all(self) -> List[BackendDescriptor]:
        return [self.get(backend_id) for backend_id in list(self._descriptors)]

    def healthy(self) -> List[BackendDescriptor]:
        """All active backends currently marked healthy."""
        return [
            d for d in self.all()
            if d.active and d.status == BackendStatus.HEALTHY
        ]

    def metrics(self, backend_id: str) -> BackendMetrics:
        with self._locks(backend_id):
            self._require(backend_id)
            return self._windows[backend_id].metrics()

    def record_outcome(self, backend_id: str, success: bool, latency_ms: float) -> BackendDescriptor:
        """Add a live-call outcome to the backend's rolling window."""
        with self._locks(backend_id):
            descriptor = self._require(backend_id)
            window = self._windows[backend_id]
            window.add(success, latency_ms)
            metrics = window.metrics()
            descriptor.success_rate = metrics.success_rate
            descriptor.avg_latency_ms = metrics.avg_latency_ms

            previous = descriptor.status
            if success and descriptor.active and descriptor.status == BackendStatus.OFFLINE:
                descriptor.status = BackendStatus.HEALTHY
            self._apply_degradation(descriptor, metrics)

            if descriptor.status != previous:
                log.info(
                    "health.status_changed",
                    backend_id=backend_id,
                    previous=previous.value,
                    status=descriptor.status.value,
                    success_rate=round(metrics.success_rate, 2),
                )
            return replace(descriptor)

    def probe(self, backend_id: str) -> ProbeResult:
        """Send a minimal synthetic request and update status.

        The probe runs without holding the backend's lock; only the status
        update is serialized.
        """
        descriptor = self.get(backend_id)
        if not descriptor.active:
            return ProbeResult(backend_id, False, 0.0, "backend is deactivated")

        backend = self.backend(backend_id)
        started = time.perf_counter()
        try:
            result = backend.invoke(PROBE_PROMPT, {"max_tokens": 8}, self._probe_timeout)
            error = None if result.ok else f"{result.kind.value}: {result.message}"
        except Exception as e:
            log.warning("health.probe_raised", backend_id=backend_id, exc_info=True)
            error = f"{type(e).__name__}: {e}"
        latency_ms = (time.perf_counter() - started) * 1000
        healthy = error is None

        self.record_outcome(backend_id, healthy, latency_ms)
        with self._locks(backend_id):
            descriptor = self._require(backend_id)
            previous = descriptor.status
            descriptor.last_probe_at = self._clock.now()
            descriptor.status = BackendStatus.HEALTHY if healthy else BackendStatus.OFFLINE
            self._apply_degradation(descriptor, self._windows[backend_id].metrics())
            status = descriptor.status

        if status != previous:
            log.info(
                "health.status_changed",
                backend_id=backend_id,
                previous=previous.value,
                status=status.value,
                source="probe",
            )
        if not healthy:
            log.warning("health.probe_failed", backend_id=backend_id, error=error, latency_ms=round(latency_ms, 1))
        return ProbeResult(backend_id, healthy, latency_ms, error)

    def probe_all(self) -> List[ProbeResult]:
        """Probe every active backend."""
        results = []
        for descriptor in self.all():
            if descriptor.active:
                results.append(self.probe(descriptor.id))
        log.info(
            "health.probe_sweep",
            probed=len(results),
            healthy=sum(1 for r in results if r.healthy),
        )
        return results

    def _apply_degradation(self, descriptor: BackendDescriptor, metrics: BackendMetrics) -> None:
        if self._degraded_below is None or descriptor.status == BackendStatus.OFFLINE:
            return
        if metrics.calls < self._degraded_min_samples:
            return
        if metrics.success_rate < self._degraded_below:
            descriptor.status = BackendStatus.DEGRADED
        elif descriptor.status == BackendStatus.DEGRADED:
            descriptor.status = BackendStatus.HEALTHY

    def _require(self, backend_id: str) -> BackendDescriptor:
        descriptor = self._descriptors.get(backend_id)
        if descriptor is None:
            raise UnknownBackendError(backend_id)
        return descriptor

    def report(self) -> str:
        """Human-readable health summary."""
        lines = ["# Backend Health Report", ""]
        for descriptor in self.all():
            metrics = self.metrics(descriptor.id)
            probed = descriptor.last_probe_at.isoformat(timespec='seconds') if descriptor.last_probe_at else "never"
            lines.append(
                f"- {descriptor.id} ({descriptor.kind.value}): {descriptor.status.value}"
                f"{'' if descriptor.active else ' [inactive]'}, "
                f"success {descriptor.success_rate:.1f}% over {metrics.calls} calls, "
                f"avg latency {descriptor.avg_latency_ms:.0f} ms, "
                f"cost/call ${descriptor.cost_per_call:.4f}, last probe {probed}"
            )
        if len(lines) == 2:
            lines.append("- no backends registered")
        return "\n".join(lines)

