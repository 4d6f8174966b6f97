"""
Budget controller.

Computes the current calendar month's budget status from the cost ledger
and raises edge-triggered alerts when spend crosses the warning or
critical threshold. Status is derived on demand and never stored.
"""

import calendar
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple

import structlog

from ai_route_guard.config.loader import BudgetConfig

from .alerts import Notifier, notify_safely
from .ledger import CostLedger
from .scheduling import Clock, SystemClock
from .types import BudgetState

log = structlog.get_logger(__name__)

_SEVERITY = {
    BudgetState.NORMAL: 0,
    BudgetState.WARNING: 1,
    BudgetState.CRITICAL: 2,
}


@dataclass(frozen=True)
class BudgetStatus:
    """Budget position for one period, derived from the ledger."""
    period_start: datetime
    period_end: datetime
    budget: float
    spent: float
    percentage_used: float
    projected_spend: float
    remaining: float
    state: BudgetState

    def to_dict(self) -> Dict[str, object]:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "budget": self.budget,
            "spent": round(self.spent, 6),
            "percentage_used": round(self.percentage_used, 2),
            "projected_spend": round(self.projected_spend, 6),
            "remaining": round(self.remaining, 6),
            "state": self.state.value,
        }


class ProjectionEstimator(Protocol):
    def project(self, spent: float, now: datetime, period_start: datetime, period_end: datetime) -> float:
        ...


class LinearDayProjection:
    """spent / day-of-month * days-in-month."""

    def project(self, spent: float, now: datetime, period_start: datetime, period_end: datetime) -> float:
        days_in_period = (period_end.date() - period_start.date()).days
        elapsed_days = max(1, (now.date() - period_start.date()).days + 1)
        return spent / elapsed_days * days_in_period


class ElapsedTimeProjection:
    """Extrapolates by the exact fraction of the period elapsed, with a one-hour floor."""

    def project(self, spent: float, now: datetime, period_start: datetime, period_end: datetime) -> float:
        total = (period_end - period_start).total_seconds()
        elapsed = max(3600.0, (now - period_start).total_seconds())
        return spent * total / elapsed


PROJECTIONS = {
    "linear-day": LinearDayProjection,
    "elapsed-time": ElapsedTimeProjection,
}


def month_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month)."""
    start = datetime(moment.year, moment.month, 1)
    days = calendar.monthrange(moment.year, moment.month)[1]
    return start, start + timedelta(days=days)


class BudgetController:
    """Budget status and threshold alerting."""

    def __init__(
        self,
        ledger: CostLedger,
        config: Optional[BudgetConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ):
        self._ledger = ledger
        self._config = config or BudgetConfig()
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._projection = PROJECTIONS[self._config.projection]()
        self._lock = threading.Lock()
        self._last_alert_severity = 0
        self._last_alert_at: Optional[datetime] = None

    @property
    def config(self) -> BudgetConfig:
        return self._config

    def update_config(
        self,
        monthly: Optional[float] = None,
        warn_threshold: Optional[float] = None,
        critical_threshold: Optional[float] = None,
    ) -> BudgetConfig:
        """Change the monthly budget or thresholds at runtime.

        Raises:
            ValueError: If the resulting configuration is invalid
        """
        changes = {
            key: value for key, value in (
                ("monthly", monthly),
                ("warn_threshold", warn_threshold),
                ("critical_threshold", critical_threshold),
            )
            if value is not None
        }
        updated = replace(self._config, **changes)
        with self._lock:
            self._config = updated
        log.info("budget.config_updated", **changes)
        return updated

    def state_for(self, percentage_used: float) -> BudgetState:
        config = self._config
        if percentage_used >= config.critical_threshold:
            return BudgetState.CRITICAL
        if percentage_used >= config.warn_threshold:
            return BudgetState.WARNING
        return BudgetState.NORMAL

    def status(self, at: Optional[datetime] = None) -> BudgetStatus:
        """Budget status for the calendar month containing ``at`` (default now)."""
        now = at or self._clock.now()
        config = self._config
        period_start, period_end = month_bounds(now)
        spent = self._ledger.totals_for_period(period_start, period_end)
        percentage = spent / config.monthly * 100
        return BudgetStatus(
            period_start=period_start,
            period_end=period_end,
            budget=config.monthly,
            spent=spent,
            percentage_used=percentage,
            projected_spend=self._projection.project(spent, now, period_start, period_end),
            remaining=config.monthly - spent,
            state=self.state_for(percentage),
        )

    def check_and_alert(self) -> BudgetStatus:
        """Recompute status and alert on a rise into warning or critical.

        An alert fires when the state is more severe than the last alerted
        state and the cooldown has elapsed. Dropping back to normal re-arms
        both thresholds.
        """
        status = self.status()
        severity = _SEVERITY[status.state]
        now = self._clock.now()
        cooldown = timedelta(minutes=self._config.alert_cooldown_minutes)

        with self._lock:
            if severity == 0:
                self._last_alert_severity = 0
                return status
            if severity < self._last_alert_severity:
                self._last_alert_severity = severity
                return status
            if severity == self._last_alert_severity:
                return status
            if self._last_alert_at is not None and now - self._last_alert_at < cooldown:
                log.info(
                    "budget.alert_suppressed",
                    state=status.state.value,
                    percentage_used=round(status.percentage_used, 2),
                )
                return status
            self._last_alert_severity = severity
            self._last_alert_at = now

        log.warning(
            "budget.threshold_crossed",
            state=status.state.value,
            spent=round(status.spent, 4),
            budget=status.budget,
            percentage_used=round(status.percentage_used, 2),
        )
        if self._notifier is not None and self._config.alerts_enabled:
            title, body = self._alert_message(status)
            if notify_safely(self._notifier, title, body):
                log.info("budget.alert_sent", state=status.state.value)
        return status

    def _alert_message(self, status: BudgetStatus) -> Tuple[str, str]:
        label = "CRITICAL" if status.state == BudgetState.CRITICAL else "Warning"
        title = f"{label}: LLM spend at {status.percentage_used:.1f}% of monthly budget"
        body = (
            f"Spent: ${status.spent:.2f} of ${status.budget:.2f}\n"
            f"Remaining: ${status.remaining:.2f}\n"
            f"Projected month-end spend: ${status.projected_spend:.2f}\n"
            f"Period: {status.period_start:%Y-%m-%d} to {status.period_end:%Y-%m-%d}"
        )
        return title, body

    def report(self) -> str:
        """Human-readable budget summary."""
        status = self.status()
        config = self._config
        lines = [
            "# Budget Report",
            "",
            f"- Period: {status.period_start:%Y-%m-%d} to {status.period_end:%Y-%m-%d}",
            f"- Monthly budget: ${status.budget:.2f}",
            f"- Spent: ${status.spent:.4f}",
            f"- Used: {status.percentage_used:.1f}%",
            f"- Remaining: ${status.remaining:.4f}",
            f"- Projected month-end spend: ${status.projected_spend:.4f}",
            f"- State: {status.state.value}",
            f"- Warning threshold: {config.warn_threshold:.0f}%",
            f"- Critical threshold: {config.critical_threshold:.0f}%",
        ]
        return "\n".join(lines)
