"""
Guardrail enforcement for backend selection.

Overrides cost-driven selections that would route work to a backend below
its mandatory quality floor.

Evaluation Order:
1. High-quality task types - only the premium backend is valid
2. Kind floors - e.g. complex tasks under the aggressive objective need at
   least a paid local backend
3. Otherwise the selection is valid as-is

Every outcome, valid or corrected, is logged and kept in the audit trail.
"""

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Deque, FrozenSet, List, Optional, Sequence, Tuple

import structlog

from .complexity import DEFAULT_HIGH_QUALITY_TASK_TYPES, TASK_CATALOG
from .types import (
    KIND_RANK,
    BackendDescriptor,
    BackendKind,
    ComplexityLevel,
    ComplexityProfile,
    Objective,
    SelectionDecision,
)

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KindFloorRule:
    """Minimum backend kind for matching objective/complexity combinations."""
    name: str
    objectives: FrozenSet[Objective]
    levels: FrozenSet[ComplexityLevel]
    minimum_kind: BackendKind

    def matches(self, objective: Objective, level: ComplexityLevel) -> bool:
        return objective in self.objectives and level in self.levels

    def describe(self) -> str:
        objectives = ", ".join(sorted(o.value for o in self.objectives))
        levels = ", ".join(sorted(lv.value for lv in self.levels))
        return (
            f"{levels} tasks under the {objectives} objective must use "
            f"at least a {self.minimum_kind.value} backend"
        )


DEFAULT_KIND_FLOORS: Tuple[KindFloorRule, ...] = (
    KindFloorRule(
        name="aggressive-complex-floor",
        objectives=frozenset({Objective.AGGRESSIVE}),
        levels=frozenset({ComplexityLevel.COMPLEX}),
        minimum_kind=BackendKind.LOCAL_ECONOMY,
    ),
)


@dataclass(frozen=True)
class GuardrailPolicy:
    """Static guardrail configuration, read-only during operation."""
    high_quality_task_types: FrozenSet[str] = field(
        default_factory=lambda: DEFAULT_HIGH_QUALITY_TASK_TYPES
    )
    kind_floors: Tuple[KindFloorRule, ...] = DEFAULT_KIND_FLOORS


@dataclass(frozen=True)
class GuardrailOutcome:
    """Result of validating one selection."""
    valid: bool
    rule: str
    reason: str
    decision: SelectionDecision
    original_backend_id: str
    task_type: Optional[str]
    objective: Objective
    timestamp: datetime

    @property
    def corrected(self) -> bool:
        return self.decision.backend_id != self.original_backend_id


class GuardrailValidator:
    """Validates and, when needed, corrects selection decisions."""

    def __init__(
        self,
        policy: GuardrailPolicy,
        premium_backend_id: str,
        backends: Callable[[], Sequence[BackendDescriptor]],
        clock: Optional[Callable[[], datetime]] = None,
        audit_size: int = 1000,
    ):
        """Initialize the validator.

        Args:
            policy: Guardrail policy
            premium_backend_id: Id of the premium backend
            backends: Callable returning the currently healthy backends
            clock: Callable returning the current time
            audit_size: Number of outcomes kept in the audit trail
        """
        self._policy = policy
        self.premium_backend_id = premium_backend_id
        self._backends = backends
        self._clock = clock or datetime.now
        self._audit: Deque[GuardrailOutcome] = deque(maxlen=audit_size)
        self._audit_lock = threading.Lock()

    @property
    def policy(self) -> GuardrailPolicy:
        return self._policy

    def reload(self, policy: GuardrailPolicy) -> None:
        """Replace the policy (explicit admin reload only)."""
        self._policy = policy
        log.info(
            "guardrail.policy_reloaded",
            high_quality_task_types=len(policy.high_quality_task_types),
            kind_floors=[rule.name for rule in policy.kind_floors],
        )

    def validate(
        self,
        profile: ComplexityProfile,
        decision: SelectionDecision,
        objective: Objective,
    ) -> GuardrailOutcome:
        """Validate a selection in rule order, correcting it if needed.

        Args:
            profile: Complexity profile of the request
            decision: Selection Strategy output
            objective: Active objective

        Returns:
            GuardrailOutcome with the (possibly corrected) decision
        """
        healthy = {b.id: b for b in self._backends()}

        # 1. High-quality tasks: premium only, no cheaper failover
        if profile.requires_high_quality:
            forced = replace(
                decision,
                backend_id=self.premium_backend_id,
                alternates=(),
                objective=Objective.QUALITY,
            )
            premium = healthy.get(self.premium_backend_id)
            if premium is not None:
                forced = replace(
                    forced,
                    estimated_cost=premium.cost_per_call,
                    estimated_latency_ms=premium.avg_latency_ms,
                )
            if decision.backend_id == self.premium_backend_id:
                reason = f"high-quality task '{profile.task_type}' already on premium backend"
                return self._record(True, "high-quality-premium", reason, forced, decision, profile, objective)

            forced = replace(forced, reason=f"guardrail: high-quality task forced to premium ({decision.reason})")
            reason = (
                f"high-quality task '{profile.task_type}' may only use the premium backend, "
                f"selected {decision.backend_id}"
            )
            return self._record(False, "high-quality-premium", reason, forced, decision, profile, objective)

        # 2. Kind floors
        for rule in self._policy.kind_floors:
            if not rule.matches(objective, profile.level):
                continue

            floor = KIND_RANK[rule.minimum_kind]
            allowed_alternates = tuple(
                backend_id for backend_id in decision.alternates
                if self._rank_of(backend_id, healthy) >= floor
            )
            chosen_rank = self._rank_of(decision.backend_id, healthy)

            if chosen_rank >= floor:
                checked = replace(decision, alternates=allowed_alternates)
                reason = f"{rule.name}: {decision.backend_id} satisfies the floor"
                return self._record(True, rule.name, reason, checked, decision, profile, objective)

            replacement = self._floor_replacement(floor, healthy)
            corrected = SelectionDecision(
                backend_id=replacement.id if replacement else self.premium_backend_id,
                reason=f"guardrail: {rule.describe()}",
                alternates=tuple(a for a in allowed_alternates if a != (replacement.id if replacement else None)),
                estimated_cost=replacement.cost_per_call if replacement else decision.estimated_cost,
                estimated_latency_ms=replacement.avg_latency_ms if replacement else decision.estimated_latency_ms,
                confidence=decision.confidence,
                objective=objective,
            )
            reason = f"{rule.name}: {decision.backend_id} is below {rule.minimum_kind.value}"
            return self._record(False, rule.name, reason, corrected, decision, profile, objective)

        # 3. Valid as-is
        return self._record(True, "none", "selection satisfies all guardrails", decision, decision, profile, objective)

    def _rank_of(self, backend_id: str, healthy: dict) -> int:
        if backend_id == self.premium_backend_id:
            return KIND_RANK[BackendKind.PREMIUM]
        backend = healthy.get(backend_id)
        if backend is None:
            return -1
        return backend.rank

    def _floor_replacement(self, floor: int, healthy: dict) -> Optional[BackendDescriptor]:
        """Best healthy non-premium backend at or above the floor, by success rate."""
        eligible = [
            b for b in healthy.values()
            if b.rank >= floor and b.kind != BackendKind.PREMIUM
        ]
        if not eligible:
            return None
        return max(eligible, key=lambda b: b.success_rate)

    def _record(
        self,
        valid: bool,
        rule: str,
        reason: str,
        decision: SelectionDecision,
        original: SelectionDecision,
        profile: ComplexityProfile,
        objective: Objective,
    ) -> GuardrailOutcome:
        outcome = GuardrailOutcome(
            valid=valid,
            rule=rule,
            reason=reason,
            decision=decision,
            original_backend_id=original.backend_id,
            task_type=profile.task_type,
            objective=objective,
            timestamp=self._clock(),
        )
        with self._audit_lock:
            self._audit.append(outcome)

        log_method = log.info if valid else log.warning
        log_method(
            "guardrail.validated",
            valid=valid,
            rule=rule,
            reason=reason,
            task_type=profile.task_type,
            complexity=profile.level.value,
            objective=objective.value,
            selected=original.backend_id,
            dispatched=decision.backend_id,
        )
        return outcome

    def audit_trail(self, limit: Optional[int] = None) -> List[GuardrailOutcome]:
        """Most recent outcomes, newest last."""
        with self._audit_lock:
            outcomes = list(self._audit)
        if limit is not None:
            outcomes = outcomes[-limit:]
        return outcomes

    def report(self) -> str:
        """Human-readable summary of the active policy and recent corrections."""
        lines = ["# Guardrail Report", ""]
        lines.append("## High-quality task types (premium only)")
        for task_type in sorted(self._policy.high_quality_task_types):
            lines.append(f"- {task_type}")

        lines.append("")
        lines.append("## Kind floors")
        if not self._policy.kind_floors:
            lines.append("- none")
        for rule in self._policy.kind_floors:
            lines.append(f"- {rule.name}: {rule.describe()}")

        lines.append("")
        lines.append("## Task catalog")
        for category, labels in TASK_CATALOG.items():
            lines.append(f"- {category}: {', '.join(sorted(labels))}")

        outcomes = self.audit_trail()
        corrections = [o for o in outcomes if not o.valid]
        lines.append("")
        lines.append("## Recent validations")
        lines.append(f"- validated: {len(outcomes)}")
        lines.append(f"- corrected: {len(corrections)}")
        for outcome in corrections[-10:]:
            lines.append(
                f"- {outcome.timestamp.isoformat(timespec='seconds')} {outcome.task_type or '-'}: "
                f"{outcome.original_backend_id} -> {outcome.decision.backend_id} ({outcome.reason})"
            )
        return "\n".join(lines)
