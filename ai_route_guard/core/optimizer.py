"""
Strategy auto-optimizer.

Maps budget state to the active objective:

- critical            -> aggressive
- warning             -> cost
- under 50% used      -> quality
- otherwise unchanged, except that budget-pressure objectives (aggressive,
  cost) set by the optimizer relax back to the default once pressure is gone

The active objective lives in an ObjectiveHolder so concurrent readers see
either the old or the new value, never a partial update.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from .budget import BudgetController, BudgetStatus
from .scheduling import Clock, SystemClock
from .types import BudgetState, Objective

log = structlog.get_logger(__name__)

QUALITY_HEADROOM_PERCENT = 50.0

_PRESSURE_OBJECTIVES = frozenset({Objective.AGGRESSIVE, Objective.COST})


class ObjectiveHolder:
    """Single atomically swapped objective value."""

    def __init__(self, initial: Objective = Objective.BALANCED):
        self._value = initial
        self._lock = threading.Lock()

    def get(self) -> Objective:
        with self._lock:
            return self._value

    def set(self, objective: Objective) -> Objective:
        """Swap in a new objective; returns the previous one."""
        with self._lock:
            previous, self._value = self._value, objective
            return previous


@dataclass(frozen=True)
class OptimizerDecision:
    previous: Objective
    objective: Objective
    state: BudgetState
    percentage_used: float
    reason: str

    @property
    def changed(self) -> bool:
        return self.previous != self.objective


class AutoOptimizer:
    """Adjusts the active objective from budget status."""

    def __init__(
        self,
        budget: BudgetController,
        holder: ObjectiveHolder,
        default_objective: Objective = Objective.BALANCED,
        interval: timedelta = timedelta(hours=1),
        clock: Optional[Clock] = None,
    ):
        self._budget = budget
        self._holder = holder
        self.default_objective = default_objective
        self._interval = interval
        self._clock = clock or SystemClock()
        self._pinned_until: Optional[datetime] = None
        self._lock = threading.Lock()

    def target_for(self, status: BudgetStatus, current: Objective) -> Objective:
        if status.state == BudgetState.CRITICAL:
            return Objective.AGGRESSIVE
        if status.state == BudgetState.WARNING:
            return Objective.COST
        if status.percentage_used < QUALITY_HEADROOM_PERCENT:
            return Objective.QUALITY
        if current in _PRESSURE_OBJECTIVES:
            return self.default_objective
        return current

    def override(self, objective: Objective) -> Objective:
        """Manually set the objective and pin it for one optimizer interval.

        Returns:
            The previous objective
        """
        with self._lock:
            self._pinned_until = self._clock.now() + self._interval
        previous = self._holder.set(objective)
        log.info(
            "optimizer.objective_overridden",
            previous=previous.value,
            objective=objective.value,
            pinned_until=self._pinned_until.isoformat(timespec="seconds"),
        )
        return previous

    @property
    def pinned(self) -> bool:
        with self._lock:
            return self._pinned_until is not None and self._clock.now() < self._pinned_until

    def adjust(self, status: Optional[BudgetStatus] = None) -> OptimizerDecision:
        """Run one optimizer cycle.

        Args:
            status: Budget status to act on; computed from the ledger if omitted

        Returns:
            OptimizerDecision describing what happened
        """
        status = status or self._budget.status()
        current = self._holder.get()

        if self.pinned:
            log.info("optimizer.skipped_pinned", objective=current.value)
            return OptimizerDecision(current, current, status.state, status.percentage_used, "manual override active")

        target = self.target_for(status, current)
        reason = f"budget {status.state.value} at {status.percentage_used:.1f}%"
        if target == current:
            return OptimizerDecision(current, current, status.state, status.percentage_used, reason)

        previous = self._holder.set(target)
        log.info(
            "optimizer.objective_changed",
            previous=previous.value,
            objective=target.value,
            state=status.state.value,
            percentage_used=round(status.percentage_used, 2),
        )
        return OptimizerDecision(previous, target, status.state, status.percentage_used, reason)
