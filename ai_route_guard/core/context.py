"""
Router context.

Builds every component from configuration and wires them together in one
explicitly constructed object; nothing is held in module-level globals.
"""

import sqlite3
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from ai_route_guard.backends.base import InferenceBackend
from ai_route_guard.backends.factory import build_backend, descriptor_from_config
from ai_route_guard.config.loader import BackendConfig, RouterConfig
from ai_route_guard.storage.repository import (
    SqliteHistoryStore,
    SqliteLedgerStore,
    SqliteRetryStore,
    initialize_schema,
)

from .alerts import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier, close_notifier
from .budget import BudgetController
from .cache import ResponseCache
from .complexity import ComplexityClassifier
from .dispatch import DispatchOrchestrator
from .guardrails import GuardrailValidator
from .health import HealthRegistry
from .ledger import CostLedger
from .optimizer import AutoOptimizer, ObjectiveHolder
from .retry_queue import RetryQueue
from .router import RoutingService
from .scheduling import Clock, Scheduler, SystemClock
from .selection import SelectionStrategy

log = structlog.get_logger(__name__)

BackendFactory = Callable[[BackendConfig], InferenceBackend]

PROBE_JOB = "health-probe"
RETRY_SWEEP_JOB = "retry-sweep"
BUDGET_CHECK_JOB = "budget-check"
OPTIMIZER_JOB = "objective-optimizer"
LEDGER_RETENTION_JOB = "ledger-retention"
RETRY_CLEANUP_JOB = "retry-cleanup"


@dataclass
class RouterContext:
    """All routing components for one process."""
    config: RouterConfig
    clock: Clock
    notifier: Notifier
    registry: HealthRegistry
    classifier: ComplexityClassifier
    strategy: SelectionStrategy
    validator: GuardrailValidator
    ledger: CostLedger
    budget: BudgetController
    objective: ObjectiveHolder
    optimizer: AutoOptimizer
    retry_queue: RetryQueue
    dispatcher: DispatchOrchestrator
    router: RoutingService
    scheduler: Scheduler
    cache: Optional[ResponseCache] = None
    backend_factory: BackendFactory = build_backend

    def close(self) -> None:
        self.scheduler.stop()
        self.router.close()
        self.registry.close()
        close_notifier(self.notifier)


def build_notifier(config: RouterConfig) -> Notifier:
    notifiers = [LogNotifier()]
    if config.alerts.webhook_url:
        notifiers.append(WebhookNotifier(config.alerts.webhook_url, timeout=config.alerts.timeout_seconds))
    return CompositeNotifier(notifiers)


def build_context(
    config: RouterConfig,
    backend_factory: BackendFactory = build_backend,
    clock: Optional[Clock] = None,
    notifier: Optional[Notifier] = None,
    persistent: bool = True,
) -> RouterContext:
    """Construct and wire every component.

    Args:
        config: Validated router configuration
        backend_factory: Builds the client for each configured backend
        clock: Time source; SystemClock by default
        notifier: Alert sink; log plus optional webhook by default
        persistent: Use SQLite stores at config.database_path; False keeps
            everything in memory

    Returns:
        RouterContext with every configured backend registered
    """
    clock = clock or SystemClock()
    notifier = notifier or build_notifier(config)

    ledger_store = retry_store = history_store = None
    if persistent:
        try:
            initialize_schema(config.database_path)
            ledger_store = SqliteLedgerStore(config.database_path)
            retry_store = SqliteRetryStore(config.database_path)
            history_store = SqliteHistoryStore(config.database_path)
        except sqlite3.Error as e:
            log.warning("context.persistence_unavailable", database=config.database_path, error=str(e))

    health = config.health
    registry = HealthRegistry(
        clock=clock,
        window_size=health.window_size,
        probe_timeout=health.probe_timeout_seconds,
        degraded_below=health.degraded_below,
        degraded_min_samples=health.degraded_min_samples,
    )
    classifier = ComplexityClassifier(config.guardrails.high_quality_task_types)
    strategy = SelectionStrategy(config.premium_backend)
    validator = GuardrailValidator(config.guardrails, config.premium_backend, registry.healthy, clock=clock.now)

    ledger = CostLedger(ledger_store, clock=clock)
    budget = BudgetController(ledger, config.budget, notifier=notifier, clock=clock)
    objective = ObjectiveHolder(config.objective.default)
    optimizer = AutoOptimizer(
        budget,
        objective,
        default_objective=config.objective.default,
        interval=timedelta(minutes=config.objective.optimizer_interval_minutes),
        clock=clock,
    )
    retry_queue = RetryQueue(retry_store, history_store, config.retry, clock=clock, notifier=notifier)

    dispatcher = DispatchOrchestrator(
        registry,
        ledger,
        config.premium_backend,
        retry_queue=retry_queue,
        attempt_timeout=config.dispatch.attempt_timeout_seconds,
        request_timeout=config.dispatch.request_timeout_seconds,
    )
    cache = None
    if config.cache.enabled:
        cache = ResponseCache(config.cache.ttl_seconds, config.cache.max_entries, clock=clock)
    router = RoutingService(
        classifier,
        registry,
        strategy,
        validator,
        dispatcher,
        objective,
        ledger,
        cache=cache,
        retry_queue=retry_queue,
        max_workers=config.dispatch.max_workers,
    )

    for backend_config in config.backends:
        registry.register(descriptor_from_config(backend_config), backend_factory(backend_config))

    context = RouterContext(
        config=config,
        clock=clock,
        notifier=notifier,
        registry=registry,
        classifier=classifier,
        strategy=strategy,
        validator=validator,
        ledger=ledger,
        budget=budget,
        objective=objective,
        optimizer=optimizer,
        retry_queue=retry_queue,
        dispatcher=dispatcher,
        router=router,
        scheduler=Scheduler(clock),
        cache=cache,
        backend_factory=backend_factory,
    )
    log.info(
        "context.built",
        backends=[b.id for b in config.backends],
        premium_backend=config.premium_backend,
        objective=config.objective.default.value,
        persistent=ledger_store is not None,
    )
    return context


def schedule_background_jobs(context: RouterContext, probe_immediately: bool = True) -> Scheduler:
    """Register the periodic jobs on the context's scheduler.

    Jobs: health probes, retry sweep, budget check, objective optimizer,
    ledger retention and retry cleanup.
    """
    config = context.config
    scheduler = context.scheduler
    scheduler.add_job(
        PROBE_JOB,
        timedelta(minutes=config.health.probe_interval_minutes),
        context.registry.probe_all,
        run_immediately=probe_immediately,
    )
    scheduler.add_job(
        RETRY_SWEEP_JOB,
        timedelta(minutes=config.retry.sweep_interval_minutes),
        context.retry_queue.sweep,
    )
    scheduler.add_job(
        BUDGET_CHECK_JOB,
        timedelta(minutes=config.budget.check_interval_minutes),
        context.budget.check_and_alert,
    )
    if config.objective.auto_optimize:
        scheduler.add_job(
            OPTIMIZER_JOB,
            timedelta(minutes=config.objective.optimizer_interval_minutes),
            context.optimizer.adjust,
        )
    scheduler.add_job(
        LEDGER_RETENTION_JOB,
        timedelta(hours=config.ledger.retention_interval_hours),
        lambda: context.ledger.purge_older_than(config.ledger.retention_days),
    )
    scheduler.add_job(
        RETRY_CLEANUP_JOB,
        timedelta(hours=config.ledger.retention_interval_hours),
        context.retry_queue.cleanup,
    )
    return scheduler
