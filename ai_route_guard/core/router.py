"""
Routing service.

Runs one request through the full pipeline:

    classify -> select (active objective, healthy backends)
             -> guardrail validation -> cache lookup -> dispatch

Guardrails are checked before dispatch, so a corrected decision is the one
that actually reaches a backend.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog

from ai_route_guard.storage.models import LedgerCategory

from .cache import ResponseCache, cache_key
from .complexity import ComplexityClassifier
from .dispatch import DispatchOrchestrator, DispatchResult, DispatchStatus
from .guardrails import GuardrailOutcome, GuardrailValidator
from .health import HealthRegistry
from .ledger import CostLedger
from .optimizer import ObjectiveHolder
from .retry_queue import RetryQueue
from .selection import SelectionStrategy
from .tasks import GENERATION_TASK, GenerationTask, parse_task_payload
from .types import ComplexityProfile

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GenerationRequest:
    """One inbound generation request."""
    prompt: str
    task_type: Optional[str] = None
    context: Tuple[str, ...] = ()
    interactive: bool = True
    cost_ceiling: Optional[float] = None
    allow_fallback: bool = True
    cacheable: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    def to_task(self) -> GenerationTask:
        return GenerationTask(
            prompt=self.prompt,
            task_type=self.task_type,
            context=tuple(self.context),
            options=dict(self.options),
            cost_ceiling=self.cost_ceiling,
            allow_fallback=self.allow_fallback,
        )

    @classmethod
    def from_task(cls, task: GenerationTask, interactive: bool = True) -> "GenerationRequest":
        return cls(
            prompt=task.prompt,
            task_type=task.task_type,
            context=task.context,
            interactive=interactive,
            cost_ceiling=task.cost_ceiling,
            allow_fallback=task.allow_fallback,
            options=dict(task.options),
        )


@dataclass(frozen=True)
class RoutingResult:
    """Everything decided and done for one request."""
    profile: ComplexityProfile
    guardrail: GuardrailOutcome
    dispatch: DispatchResult

    @property
    def served(self) -> bool:
        return self.dispatch.served

    @property
    def deferred(self) -> bool:
        return self.dispatch.deferred

    @property
    def content(self) -> Optional[str]:
        return self.dispatch.content

    @property
    def backend_id(self) -> Optional[str]:
        return self.dispatch.backend_id

    @property
    def cost(self) -> float:
        return self.dispatch.cost


class RoutingService:
    """Composes classifier, selection, guardrails and dispatch."""

    def __init__(
        self,
        classifier: ComplexityClassifier,
        registry: HealthRegistry,
        strategy: SelectionStrategy,
        validator: GuardrailValidator,
        dispatcher: DispatchOrchestrator,
        objective: ObjectiveHolder,
        ledger: CostLedger,
        cache: Optional[ResponseCache] = None,
        retry_queue: Optional[RetryQueue] = None,
        max_workers: int = 8,
    ):
        self.classifier = classifier
        self.registry = registry
        self.strategy = strategy
        self.validator = validator
        self.dispatcher = dispatcher
        self.objective = objective
        self.ledger = ledger
        self.cache = cache
        self._max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()
        if retry_queue is not None:
            retry_queue.register_executor(GENERATION_TASK, self.execute_retry)

    def route(self, request: GenerationRequest) -> RoutingResult:
        """Route one request.

        Raises:
            DispatchFailedError: If an interactive request fails on every backend
        """
        profile = self.classifier.classify(request.prompt, list(request.context), request.task_type)
        objective = self.objective.get()
        healthy = self.registry.healthy()

        decision = self.strategy.select(profile, healthy, objective, request.cost_ceiling)
        guardrail = self.validator.validate(profile, decision, objective)
        decision = guardrail.decision

        log.info(
            "router.selected",
            backend_id=decision.backend_id,
            alternates=list(decision.alternates),
            reason=decision.reason,
            complexity=profile.level.value,
            score=profile.score,
            objective=objective.value,
            task_type=profile.task_type,
        )

        key = None
        if request.cacheable and self.cache is not None:
            key = cache_key(request.prompt, request.task_type, request.context, request.options)
            hit = self.cache.get(key)
            allowed = {decision.backend_id, *decision.alternates, self.dispatcher.premium_backend_id}
            if hit is not None and hit.backend_id in allowed:
                self.ledger.record(
                    LedgerCategory.AVOIDED_VIA_CACHE,
                    hit.backend_id,
                    hit.cost,
                    {"task_type": profile.task_type, "complexity": profile.level.value},
                )
                log.info("router.cache_hit", backend_id=hit.backend_id, avoided_cost=hit.cost)
                return RoutingResult(
                    profile=profile,
                    guardrail=guardrail,
                    dispatch=DispatchResult(
                        status=DispatchStatus.SERVED,
                        decision=decision,
                        content=hit.content,
                        backend_id=hit.backend_id,
                        cost=0.0,
                        cached=True,
                    ),
                )

        result = self.dispatcher.dispatch(
            request.prompt,
            profile,
            decision,
            options=request.options,
            interactive=request.interactive,
            allow_fallback=request.allow_fallback,
            retry_task=None if request.interactive else request.to_task(),
        )
        if key is not None and result.served:
            self.cache.put(key, result.content, result.backend_id, result.cost)
        return RoutingResult(profile=profile, guardrail=guardrail, dispatch=result)

    def route_many(
        self,
        requests: Sequence[GenerationRequest],
        return_exceptions: bool = False,
    ) -> List[Union[RoutingResult, Exception]]:
        """Route requests concurrently on the worker pool, preserving order.

        Args:
            requests: Requests to route
            return_exceptions: Return failures in place instead of raising the first one
        """
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="ai-route-guard")
            pool = self._pool
        futures = [pool.submit(self.route, request) for request in requests]
        results: List[Union[RoutingResult, Exception]] = []
        for future in futures:
            if return_exceptions:
                error = future.exception()
                results.append(error if error is not None else future.result())
            else:
                results.append(future.result())
        return results

    def execute_retry(self, payload: Dict[str, Any]) -> RoutingResult:
        """Retry executor for generation tasks; raises when every backend fails again."""
        task = parse_task_payload(GENERATION_TASK, payload)
        return self.route(GenerationRequest.from_task(task, interactive=True))

    def close(self) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)
