"""
Tests for dispatch and in-call failover.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from ai_route_guard.backends.base import BackendErrorKind
from ai_route_guard.core.complexity import ComplexityClassifier
from ai_route_guard.core.dispatch import DispatchOrchestrator, DispatchStatus, format_trace
from ai_route_guard.core.errors import DispatchFailedError
from ai_route_guard.core.health import HealthRegistry
from ai_route_guard.core.ledger import CostLedger
from ai_route_guard.core.pricing import BackendPricing, TokenUsage
from ai_route_guard.core.retry_queue import RetryQueue
from ai_route_guard.core.tasks import GenerationTask
from ai_route_guard.core.types import BackendKind, Objective, SelectionDecision
from ai_route_guard.storage.models import LedgerCategory, RetryStatus

from .helpers import MEDIUM_PROMPT, ScriptedBackend, make_descriptor


class FakeMonotonic:
    """Monotonic clock advanced by the backends under test."""

    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


class SlowBackend(ScriptedBackend):
    def __init__(self, monotonic, seconds, **kwargs):
        super().__init__(**kwargs)
        self.monotonic = monotonic
        self.seconds = seconds

    def invoke(self, prompt, options, timeout):
        self.monotonic.value += self.seconds
        return super().invoke(prompt, options, timeout)


@pytest.fixture
def backends():
    return {
        "premium": ScriptedBackend("premium answer"),
        "economy": ScriptedBackend("economy answer"),
        "zero": ScriptedBackend("zero answer"),
        "zero2": ScriptedBackend("zero2 answer"),
    }


@pytest.fixture
def registry(clock, backends):
    registry = HealthRegistry(clock=clock)
    kinds = {
        "premium": (BackendKind.PREMIUM, 0.03),
        "economy": (BackendKind.LOCAL_ECONOMY, 0.002),
        "zero": (BackendKind.LOCAL_ZERO_COST, 0.0),
        "zero2": (BackendKind.LOCAL_ZERO_COST, 0.0),
    }
    for backend_id, (kind, cost) in kinds.items():
        registry.register(make_descriptor(backend_id, kind, cost=cost), backends[backend_id])
    return registry


@pytest.fixture
def ledger(clock):
    return CostLedger(clock=clock)


@pytest.fixture
def queue(clock):
    return RetryQueue(clock=clock)


@pytest.fixture
def orchestrator(registry, ledger, queue):
    return DispatchOrchestrator(registry, ledger, "premium", queue, attempt_timeout=20, request_timeout=60)


@pytest.fixture
def profile():
    return ComplexityClassifier().classify(MEDIUM_PROMPT, task_type="summarization")


def _decision(backend_id="zero", alternates=("zero2", "economy")):
    return SelectionDecision(backend_id=backend_id, reason="test", alternates=alternates, objective=Objective.COST)


class TestAttemptOrder:
    """Test failover ordering."""

    def test_premium_appended_last(self, orchestrator):
        assert orchestrator.attempt_order(_decision()) == ["zero", "zero2", "economy", "premium"]

    def test_premium_not_duplicated(self, orchestrator):
        assert orchestrator.attempt_order(_decision("premium", ("economy",))) == ["premium", "economy"]

    def test_fallback_disabled(self, orchestrator):
        assert orchestrator.attempt_order(_decision(), allow_fallback=False) == ["zero", "zero2", "economy"]

    def test_attempt_timeout_must_leave_room(self, registry, ledger):
        with pytest.raises(ValueError):
            DispatchOrchestrator(registry, ledger, "premium", attempt_timeout=60, request_timeout=60)


class TestDispatch:
    """Test dispatch outcomes."""

    def test_served_by_selected_backend(self, orchestrator, profile, ledger, backends):
        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision(), {"temperature": 0.1})

        assert result.status == DispatchStatus.SERVED
        assert result.backend_id == "zero"
        assert result.content == "zero answer"
        assert len(result.trace) == 1
        assert backends["zero"].calls[0] == (MEDIUM_PROMPT, {"temperature": 0.1}, 20)
        entry = ledger.entries()[0]
        assert entry.category == LedgerCategory.GENERATION_CALL
        assert entry.backend_id == "zero"
        assert entry.metadata["complexity"] == "medium"
        assert entry.metadata["task_type"] == "summarization"
        assert entry.metadata["objective"] == "cost"

    def test_three_failures_reach_premium(self, orchestrator, profile, backends, ledger):
        for backend_id in ("zero", "zero2", "economy"):
            backends[backend_id].fail = True

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision())

        assert result.backend_id == "premium"
        assert [a.backend_id for a in result.trace] == ["zero", "zero2", "economy", "premium"]
        assert [a.success for a in result.trace] == [False, False, False, True]
        assert result.metadata["selected"] == "zero"
        assert [e.amount for e in ledger.entries()] == [0.03]

    def test_outcomes_feed_health_registry(self, orchestrator, profile, backends, registry):
        backends["zero"].fail = True

        orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision())

        assert registry.metrics("zero").failures == 1
        assert registry.metrics("zero2").successes == 1

    def test_backend_exception_is_a_failed_attempt(self, orchestrator, profile, backends):
        backends["zero"].queue(ConnectionError("refused"))

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision())

        assert result.backend_id == "zero2"
        assert result.trace[0].error_kind == "unavailable"
        assert "ConnectionError" in result.trace[0].error

    def test_unregistered_and_deactivated_backends_are_skipped(self, orchestrator, profile, registry, backends):
        registry.deregister("zero2")

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision("ghost", ("zero2", "economy")))

        assert result.backend_id == "economy"
        assert result.trace[0].error == "backend is not registered"
        assert result.trace[1].error == "backend is deactivated"
        assert backends["zero2"].calls == []

    def test_interactive_total_failure_raises_with_trace(self, orchestrator, profile, backends, queue):
        for backend in backends.values():
            backend.fail = True
        backends["economy"].error_kind = BackendErrorKind.TIMEOUT

        with pytest.raises(DispatchFailedError) as excinfo:
            orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision())

        assert [a.backend_id for a in excinfo.value.trace] == ["zero", "zero2", "economy", "premium"]
        assert excinfo.value.trace[2].error_kind == "timeout"
        assert queue.stats()["pending"] == 0

    def test_background_total_failure_defers(self, orchestrator, profile, backends, queue, clock):
        for backend in backends.values():
            backend.fail = True
        task = GenerationTask(prompt=MEDIUM_PROMPT, task_type="summarization")

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision(), interactive=False, retry_task=task)

        assert result.status == DispatchStatus.DEFERRED
        record = queue.get(result.retry_record_id)
        assert record.status == RetryStatus.PENDING
        assert record.payload["prompt"] == MEDIUM_PROMPT
        assert record.next_eligible_at == clock.now() + timedelta(seconds=30)
        assert "zero: unavailable" in record.last_error

    def test_fallback_disabled_never_calls_premium(self, orchestrator, profile, backends):
        for backend_id in ("zero", "zero2", "economy"):
            backends[backend_id].fail = True

        with pytest.raises(DispatchFailedError):
            orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision(), allow_fallback=False)

        assert backends["premium"].calls == []

    def test_token_pricing_overrides_flat_cost(self, clock, ledger, profile):
        registry = HealthRegistry(clock=clock)
        descriptor = make_descriptor("premium", BackendKind.PREMIUM, cost=0.03)
        descriptor.pricing = BackendPricing(Decimal("0.01"), Decimal("0.03"))
        registry.register(descriptor, ScriptedBackend(usage=TokenUsage(1000, 500)))
        orchestrator = DispatchOrchestrator(registry, ledger, "premium")

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision("premium", ()))

        assert result.cost == pytest.approx(0.025)
        assert ledger.entries()[0].metadata["prompt_tokens"] == 1000


class TestRequestBudget:
    """Test the overall request timeout."""

    def test_attempt_timeout_shrinks_to_remaining_budget(self, clock, ledger, profile):
        monotonic = FakeMonotonic()
        registry = HealthRegistry(clock=clock)
        registry.register(make_descriptor("zero", BackendKind.LOCAL_ZERO_COST), SlowBackend(monotonic, 45.0, fail=True))
        registry.register(make_descriptor("zero2", BackendKind.LOCAL_ZERO_COST), ScriptedBackend("fast"))
        registry.register(make_descriptor("premium", BackendKind.PREMIUM, cost=0.03), ScriptedBackend("premium"))
        orchestrator = DispatchOrchestrator(registry, ledger, "premium", attempt_timeout=20, request_timeout=60, monotonic=monotonic)

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision("zero", ("zero2",)))

        assert result.backend_id == "zero2"
        assert [a.timeout for a in result.trace] == [20, 15]

    def test_three_timeouts_still_reach_premium(self, clock, ledger, profile):
        """Verify alternates that use up the budget never cost the premium attempt."""
        monotonic = FakeMonotonic()
        registry = HealthRegistry(clock=clock)
        for backend_id in ("zero", "zero2", "economy"):
            slow = SlowBackend(monotonic, 20.0, fail=True)
            slow.error_kind = BackendErrorKind.TIMEOUT
            registry.register(make_descriptor(backend_id, BackendKind.LOCAL_ZERO_COST), slow)
        premium = ScriptedBackend("premium")
        registry.register(make_descriptor("premium", BackendKind.PREMIUM, cost=0.03), premium)
        orchestrator = DispatchOrchestrator(registry, ledger, "premium", attempt_timeout=20, request_timeout=60, monotonic=monotonic)

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision())

        assert result.backend_id == "premium"
        assert [a.error_kind for a in result.trace[:3]] == ["timeout", "timeout", "timeout"]
        assert len(premium.calls) == 1
        assert premium.calls[0][2] == 20

    def test_exhausted_budget_skips_alternates_but_not_premium(self, clock, ledger, profile):
        monotonic = FakeMonotonic()
        registry = HealthRegistry(clock=clock)
        registry.register(make_descriptor("zero", BackendKind.LOCAL_ZERO_COST), SlowBackend(monotonic, 61.0, fail=True))
        skipped = ScriptedBackend("zero2")
        registry.register(make_descriptor("zero2", BackendKind.LOCAL_ZERO_COST), skipped)
        premium = ScriptedBackend("premium")
        registry.register(make_descriptor("premium", BackendKind.PREMIUM, cost=0.03), premium)
        orchestrator = DispatchOrchestrator(registry, ledger, "premium", attempt_timeout=20, request_timeout=60, monotonic=monotonic)

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision("zero", ("zero2",)))

        assert result.backend_id == "premium"
        assert skipped.calls == []
        assert result.trace[1].error == "request budget exhausted"
        assert premium.calls[0][2] == 20

    def test_exhausted_budget_without_fallback_raises(self, clock, ledger, profile):
        monotonic = FakeMonotonic()
        registry = HealthRegistry(clock=clock)
        registry.register(make_descriptor("zero", BackendKind.LOCAL_ZERO_COST), SlowBackend(monotonic, 61.0, fail=True))
        premium = ScriptedBackend("premium")
        registry.register(make_descriptor("premium", BackendKind.PREMIUM, cost=0.03), premium)
        orchestrator = DispatchOrchestrator(registry, ledger, "premium", attempt_timeout=20, request_timeout=60, monotonic=monotonic)

        with pytest.raises(DispatchFailedError) as excinfo:
            orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision("zero", ()), allow_fallback=False)

        assert len(excinfo.value.trace) == 1
        assert premium.calls == []


class TestTrace:
    def test_format_trace(self, orchestrator, profile, backends):
        backends["zero"].fail = True

        result = orchestrator.dispatch(MEDIUM_PROMPT, profile, _decision())

        assert format_trace(result.trace).startswith("zero: unavailable (scripted failure); zero2: ok in")
        assert format_trace(()) == "no attempts made"
