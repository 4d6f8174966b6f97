"""
Administrative surface.

Operator actions and reports over a RouterContext. Every report comes in
two forms: a human-readable text summary and structured data.
"""

from dataclasses import asdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from ai_route_guard.backends.factory import descriptor_from_config
from ai_route_guard.config.loader import BackendConfig, BudgetConfig

from .complexity import normalize_task_type
from .context import RouterContext
from .guardrails import GuardrailPolicy
from .retry_queue import SweepReport
from .types import BackendDescriptor, Objective

log = structlog.get_logger(__name__)


class AdminService:
    """Operator actions and reports."""

    def __init__(self, context: RouterContext):
        self.context = context

    # Actions

    def register_backend(self, config: BackendConfig) -> BackendDescriptor:
        descriptor = self.context.registry.register(
            descriptor_from_config(config),
            self.context.backend_factory(config),
        )
        log.info("admin.backend_registered", backend_id=config.id)
        return descriptor

    def deregister_backend(self, backend_id: str) -> None:
        self.context.registry.deregister(backend_id)
        log.info("admin.backend_deregistered", backend_id=backend_id)

    def set_budget(
        self,
        monthly: Optional[float] = None,
        warn_threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
    ) -> BudgetConfig:
        return self.context.budget.update_config(monthly, warn_threshold, critical_threshold)

    def override_objective(self, objective: Objective) -> Objective:
        """Pin the objective for one optimizer interval; returns the previous one."""
        return self.context.optimizer.override(objective)

    def mark_retry(self, record_id: str, succeeded: bool, reason: Optional[str] = None):
        queue = self.context.retry_queue
        if succeeded:
            return queue.mark_succeeded(record_id)
        return queue.mark_failed(record_id, reason or "marked failed by operator")

    def sweep_retries(self) -> SweepReport:
        """Run a retry sweep now, outside the schedule."""
        return self.context.retry_queue.sweep()

    def reload_guardrails(self, policy: GuardrailPolicy) -> None:
        self.context.validator.reload(policy)
        self.context.classifier.high_quality_task_types = frozenset(
            normalize_task_type(label) for label in policy.high_quality_task_types if normalize_task_type(label)
        )

    # Reports

    def health_report(self) -> str:
        return self.context.registry.report()

    def health_data(self) -> List[Dict[str, Any]]:
        data = []
        for descriptor in self.context.registry.all():
            metrics = self.context.registry.metrics(descriptor.id)
            data.append({
                "id": descriptor.id,
                "name": descriptor.name,
                "kind": descriptor.kind.value,
                "status": descriptor.status.value,
                "active": descriptor.active,
                "success_rate": round(descriptor.success_rate, 2),
                "avg_latency_ms": round(descriptor.avg_latency_ms, 1),
                "cost_per_call": descriptor.cost_per_call,
                "calls": metrics.calls,
                "last_probe_at": descriptor.last_probe_at.isoformat() if descriptor.last_probe_at else None,
            })
        return data

    def cost_data(self, days: int = 30) -> Dict[str, Any]:
        ledger = self.context.ledger
        now = self.context.clock.now()
        start, end = now - timedelta(days=days), now + timedelta(microseconds=1)
        return {
            "days": days,
            "total": ledger.totals_for_period(start, end),
            "cache_avoided": ledger.cache_avoided_total(start, end),
            "by_backend": [asdict(b) for b in ledger.breakdown_by_backend(start, end)],
            "daily": {day.isoformat(): total for day, total in ledger.daily_totals(min(days, 31)).items()},
            "monthly": ledger.monthly_totals(),
            "persistence_degraded": ledger.degraded,
        }

    def cost_report(self, days: int = 30) -> str:
        data = self.cost_data(days)
        lines = [
            "# Cost Report",
            "",
            f"- Last {days} days: ${data['total']:.4f}",
            f"- Avoided via cache (not netted): ${data['cache_avoided']:.4f}",
        ]
        if data["persistence_degraded"]:
            lines.append("- WARNING: persistence degraded, in-memory entries only since the failure")
        lines.append("")
        lines.append("## By backend")
        if not data["by_backend"]:
            lines.append("- no generation spend recorded")
        for row in data["by_backend"]:
            lines.append(f"- {row['backend_id']}: ${row['total']:.4f} over {row['calls']} calls")
        lines.append("")
        lines.append("## By month")
        for month, total in data["monthly"].items():
            lines.append(f"- {month}: ${total:.4f}")
        return "\n".join(lines)

    def budget_report(self) -> str:
        lines = [self.context.budget.report()]
        lines.append(f"- Active objective: {self.context.objective.get().value}")
        if self.context.optimizer.pinned:
            lines.append("- Objective pinned by manual override")
        return "\n".join(lines)

    def budget_data(self) -> Dict[str, Any]:
        data = self.context.budget.status().to_dict()
        data["objective"] = self.context.objective.get().value
        data["objective_pinned"] = self.context.optimizer.pinned
        return data

    def guardrail_report(self) -> str:
        return self.context.validator.report()

    def guardrail_data(self, limit: int = 50) -> Dict[str, Any]:
        policy = self.context.validator.policy
        return {
            "high_quality_task_types": sorted(policy.high_quality_task_types),
            "kind_floors": [
                {
                    "name": rule.name,
                    "objectives": sorted(o.value for o in rule.objectives),
                    "levels": sorted(lv.value for lv in rule.levels),
                    "minimum_kind": rule.minimum_kind.value,
                }
                for rule in policy.kind_floors
            ],
            "recent": [
                {
                    "timestamp": o.timestamp.isoformat(),
                    "valid": o.valid,
                    "rule": o.rule,
                    "reason": o.reason,
                    "task_type": o.task_type,
                    "objective": o.objective.value,
                    "selected": o.original_backend_id,
                    "dispatched": o.decision.backend_id,
                }
                for o in self.context.validator.audit_trail(limit)
            ],
        }

    def retry_report(self) -> str:
        return self.context.retry_queue.report()

    def retry_data(self, limit: int = 50) -> Dict[str, Any]:
        queue = self.context.retry_queue
        return {
            "stats": queue.stats(),
            "records": [
                {
                    "id": r.id,
                    "task_kind": r.task_kind,
                    "status": r.status.value,
                    "attempt": r.attempt,
                    "max_attempts": r.max_attempts,
                    "next_eligible_at": r.next_eligible_at.isoformat(),
                    "last_error": r.last_error,
                }
                for r in queue.list_records(limit=limit)
            ],
            "history": [
                {
                    "record_id": h.record_id,
                    "task_kind": h.task_kind,
                    "attempt": h.attempt,
                    "status": h.status.value,
                    "executed_at": h.executed_at.isoformat(),
                    "duration_ms": round(h.duration_ms, 1),
                    "error": h.error,
                }
                for h in queue.history(limit=limit)
            ],
        }
