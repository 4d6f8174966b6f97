"""
Dispatch orchestrator with in-call failover.

Attempt order for one request:
1. The selected backend
2. Each ranked alternate, in order
3. The premium backend, unconditionally, unless the caller disabled fallback

The selected backend and the alternates share the request budget: each is
bounded by min(attempt timeout, remaining request budget), and alternates
the budget no longer covers are skipped. The premium hard fallback is
never skipped and always gets a full attempt timeout. Every attempt outcome
is fed back into the health registry.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from ai_route_guard.backends.base import BackendErrorKind
from ai_route_guard.storage.models import LedgerCategory

from .errors import DispatchFailedError, UnknownBackendError
from .health import HealthRegistry
from .ledger import CostLedger
from .pricing import TokenUsage, calculate_cost
from .retry_queue import RetryQueue
from .tasks import GenerationTask
from .types import ComplexityProfile, SelectionDecision

log = structlog.get_logger(__name__)


class DispatchStatus(Enum):
    SERVED = "served"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class AttemptRecord:
    """One backend attempt in the failover trace."""
    backend_id: str
    success: bool
    latency_ms: float
    timeout: float
    error_kind: Optional[str] = None
    error: Optional[str] = None

    def describe(self) -> str:
        if self.success:
            return f"{self.backend_id}: ok in {self.latency_ms:.0f} ms"
        return f"{self.backend_id}: {self.error_kind} ({self.error})"


@dataclass(frozen=True)
class DispatchResult:
    """Served response, or a deferral into the retry queue."""
    status: DispatchStatus
    decision: SelectionDecision
    trace: Tuple[AttemptRecord, ...] = ()
    content: Optional[str] = None
    backend_id: Optional[str] = None
    cost: float = 0.0
    usage: Optional[TokenUsage] = None
    retry_record_id: Optional[str] = None
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def served(self) -> bool:
        return self.status == DispatchStatus.SERVED

    @property
    def deferred(self) -> bool:
        return self.status == DispatchStatus.DEFERRED


def format_trace(trace) -> str:
    return "; ".join(attempt.describe() for attempt in trace) or "no attempts made"


class DispatchOrchestrator:
    """Executes a selection decision against live backends."""

    def __init__(
        self,
        registry: HealthRegistry,
        ledger: CostLedger,
        premium_backend_id: str,
        retry_queue: Optional[RetryQueue] = None,
        attempt_timeout: float = 20.0,
        request_timeout: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            registry: Health registry holding backends and their statistics
            ledger: Cost ledger receiving one entry per served call
            premium_backend_id: Hard-fallback backend
            retry_queue: Queue for deferred background requests
            attempt_timeout: Per-attempt timeout in seconds
            request_timeout: Overall budget for one request in seconds
            monotonic: Time source for the request budget
        """
        if attempt_timeout >= request_timeout:
            raise ValueError("attempt_timeout must be shorter than request_timeout")
        self._registry = registry
        self._ledger = ledger
        self.premium_backend_id = premium_backend_id
        self._retry_queue = retry_queue
        self.attempt_timeout = attempt_timeout
        self.request_timeout = request_timeout
        self._monotonic = monotonic

    def attempt_order(self, decision: SelectionDecision, allow_fallback: bool = True) -> List[str]:
        order = [decision.backend_id, *decision.alternates]
        if allow_fallback:
            order.append(self.premium_backend_id)
        unique: List[str] = []
        for backend_id in order:
            if backend_id not in unique:
                unique.append(backend_id)
        return unique

    def dispatch(
        self,
        prompt: str,
        profile: ComplexityProfile,
        decision: SelectionDecision,
        options: Optional[Dict[str, Any]] = None,
        interactive: bool = True,
        allow_fallback: bool = True,
        retry_task: Optional[GenerationTask] = None,
    ) -> DispatchResult:
        """Try backends in order until one serves the request.

        Args:
            prompt: Prompt text
            profile: Complexity profile, recorded with the cost entry
            decision: Guardrail-validated selection
            options: Backend options passed through to invoke
            interactive: Foreground call; failures raise instead of deferring
            allow_fallback: Whether the premium hard fallback may be used
            retry_task: Payload to enqueue if a background call fails

        Returns:
            DispatchResult, served or deferred

        Raises:
            DispatchFailedError: If an interactive call fails on every backend
        """
        options = dict(options or {})
        started = self._monotonic()
        trace: List[AttemptRecord] = []

        for backend_id in self.attempt_order(decision, allow_fallback):
            remaining = self.request_timeout - (self._monotonic() - started)
            if allow_fallback and backend_id == self.premium_backend_id:
                timeout = self.attempt_timeout
            elif remaining <= 0:
                log.warning("dispatch.request_budget_exhausted", backend_id=backend_id, attempts=len(trace))
                trace.append(AttemptRecord(
                    backend_id, False, 0.0, 0.0,
                    BackendErrorKind.TIMEOUT.value, "request budget exhausted",
                ))
                continue
            else:
                timeout = min(self.attempt_timeout, remaining)

            attempt, result = self._attempt(backend_id, prompt, options, timeout)
            trace.append(attempt)
            if attempt.success:
                return self._served(backend_id, result, profile, decision, trace)

            log.warning(
                "dispatch.attempt_failed",
                backend_id=backend_id,
                error_kind=attempt.error_kind,
                error=attempt.error,
                attempt=len(trace),
            )

        summary = format_trace(trace)
        if not interactive and retry_task is not None and self._retry_queue is not None:
            record = self._retry_queue.enqueue(retry_task.kind, retry_task.to_dict(), error=summary)
            log.warning(
                "dispatch.deferred",
                record_id=record.id,
                attempts=len(trace),
                task_type=profile.task_type,
            )
            return DispatchResult(
                status=DispatchStatus.DEFERRED,
                decision=decision,
                trace=tuple(trace),
                retry_record_id=record.id,
            )

        log.error("dispatch.failed", attempts=len(trace), trace=summary, task_type=profile.task_type)
        raise DispatchFailedError(f"All backends failed: {summary}", trace)

    def _attempt(self, backend_id: str, prompt: str, options: Dict[str, Any], timeout: float):
        try:
            descriptor = self._registry.get(backend_id)
            backend = self._registry.backend(backend_id)
        except UnknownBackendError:
            return AttemptRecord(
                backend_id, False, 0.0, timeout,
                BackendErrorKind.UNAVAILABLE.value, "backend is not registered",
            ), None
        if not descriptor.active:
            return AttemptRecord(
                backend_id, False, 0.0, timeout,
                BackendErrorKind.UNAVAILABLE.value, "backend is deactivated",
            ), None

        attempt_started = time.perf_counter()
        try:
            result = backend.invoke(prompt, options, timeout)
        except Exception as e:
            log.exception("dispatch.backend_raised", backend_id=backend_id)
            result = None
            error_kind, error = BackendErrorKind.UNAVAILABLE.value, f"{type(e).__name__}: {e}"
        latency_ms = (time.perf_counter() - attempt_started) * 1000

        if result is not None:
            if result.ok:
                self._registry.record_outcome(backend_id, True, latency_ms)
                return AttemptRecord(backend_id, True, latency_ms, timeout), result
            error_kind, error = result.kind.value, result.message

        self._registry.record_outcome(backend_id, False, latency_ms)
        return AttemptRecord(backend_id, False, latency_ms, timeout, error_kind, error), None

    def _served(self, backend_id, completion, profile, decision, trace) -> DispatchResult:
        descriptor = self._registry.get(backend_id)
        cost = calculate_cost(descriptor.cost_per_call, descriptor.pricing, completion.usage)
        metadata: Dict[str, Any] = {
            "task_type": profile.task_type,
            "complexity": profile.level.value,
            "score": profile.score,
            "objective": decision.objective.value,
            "selected": decision.backend_id,
            "attempts": len(trace),
            "latency_ms": round(trace[-1].latency_ms, 1),
        }
        if completion.usage is not None:
            metadata["prompt_tokens"] = completion.usage.prompt_tokens
            metadata["completion_tokens"] = completion.usage.completion_tokens
        self._ledger.record(LedgerCategory.GENERATION_CALL, backend_id, cost, metadata)

        log.info(
            "dispatch.served",
            backend_id=backend_id,
            selected=decision.backend_id,
            attempts=len(trace),
            cost=cost,
            failover=backend_id != decision.backend_id,
        )
        return DispatchResult(
            status=DispatchStatus.SERVED,
            decision=decision,
            trace=tuple(trace),
            content=completion.content,
            backend_id=backend_id,
            cost=cost,
            usage=completion.usage,
            metadata=metadata,
        )
