"""
Tests for budget status and threshold alerts.
"""

from datetime import datetime, timedelta

import pytest

from ai_route_guard.config.loader import BudgetConfig
from ai_route_guard.core.budget import (
    BudgetController,
    ElapsedTimeProjection,
    LinearDayProjection,
    month_bounds,
)
from ai_route_guard.core.ledger import CostLedger
from ai_route_guard.core.types import BudgetState
from ai_route_guard.storage.models import LedgerCategory

from .helpers import RecordingNotifier


@pytest.fixture
def ledger(clock):
    return CostLedger(clock=clock)


def _spend(ledger, amount, backend_id="premium"):
    ledger.record(LedgerCategory.GENERATION_CALL, backend_id, amount)


class TestMonthBounds:
    """Test calendar month periods."""

    def test_regular_month(self):
        assert month_bounds(datetime(2024, 1, 15, 12)) == (datetime(2024, 1, 1), datetime(2024, 2, 1))

    def test_leap_february_and_december(self):
        assert month_bounds(datetime(2024, 2, 29)) == (datetime(2024, 2, 1), datetime(2024, 3, 1))
        assert month_bounds(datetime(2023, 12, 31, 23, 59)) == (datetime(2023, 12, 1), datetime(2024, 1, 1))


class TestProjections:
    """Test month-end projections."""

    def test_linear_day(self):
        start, end = month_bounds(datetime(2024, 1, 15))

        projected = LinearDayProjection().project(50.0, datetime(2024, 1, 15, 12), start, end)

        assert projected == pytest.approx(50.0 / 15 * 31)

    def test_linear_day_first_day(self):
        start, end = month_bounds(datetime(2024, 1, 1))

        assert LinearDayProjection().project(2.0, datetime(2024, 1, 1, 0, 5), start, end) == pytest.approx(62.0)

    def test_elapsed_time_has_one_hour_floor(self):
        start, end = month_bounds(datetime(2024, 1, 1))

        projected = ElapsedTimeProjection().project(1.0, datetime(2024, 1, 1, 0, 1), start, end)

        assert projected == pytest.approx(31 * 24)


class TestStatus:
    """Test BudgetController.status."""

    def test_spent_equals_generation_entries_in_month(self, ledger, clock):
        _spend(ledger, 10.0)
        _spend(ledger, 2.5, "economy")
        ledger.record(LedgerCategory.AVOIDED_VIA_CACHE, "premium", 40.0)
        clock.set(datetime(2023, 12, 31, 23, 0))
        _spend(ledger, 30.0)
        clock.set(datetime(2024, 1, 15, 12, 0))

        status = BudgetController(ledger, BudgetConfig(monthly=100.0), clock=clock).status()

        assert status.spent == pytest.approx(12.5)
        assert status.percentage_used == pytest.approx(12.5)
        assert status.remaining == pytest.approx(87.5)
        assert status.state == BudgetState.NORMAL
        assert status.period_start == datetime(2024, 1, 1)

    def test_thresholds(self, ledger, clock):
        controller = BudgetController(ledger, BudgetConfig(monthly=100.0), clock=clock)

        assert controller.state_for(79.99) == BudgetState.NORMAL
        assert controller.state_for(80.0) == BudgetState.WARNING
        assert controller.state_for(95.0) == BudgetState.CRITICAL
        assert controller.state_for(140.0) == BudgetState.CRITICAL

    def test_overspend_reports_negative_remaining(self, ledger, clock):
        _spend(ledger, 120.0)

        status = BudgetController(ledger, BudgetConfig(monthly=100.0), clock=clock).status()

        assert status.remaining == pytest.approx(-20.0)
        assert status.state == BudgetState.CRITICAL

    def test_update_config(self, ledger, clock):
        controller = BudgetController(ledger, BudgetConfig(monthly=100.0), clock=clock)
        _spend(ledger, 50.0)

        controller.update_config(monthly=55.0)

        assert controller.status().state == BudgetState.WARNING
        with pytest.raises(ValueError):
            controller.update_config(warn_threshold=99.0)
        assert controller.config.warn_threshold == 80.0

    def test_status_dict_and_report(self, ledger, clock):
        _spend(ledger, 25.0)
        controller = BudgetController(ledger, BudgetConfig(monthly=100.0), clock=clock)

        data = controller.status().to_dict()
        report = controller.report()

        assert data["state"] == "normal"
        assert data["percentage_used"] == 25.0
        assert "- Used: 25.0%" in report
        assert "- Critical threshold: 95%" in report


class TestAlerts:
    """Test edge-triggered alerting."""

    @pytest.fixture
    def notifier(self):
        return RecordingNotifier()

    @pytest.fixture
    def controller(self, ledger, clock, notifier):
        return BudgetController(ledger, BudgetConfig(monthly=100.0, alert_cooldown_minutes=60), notifier, clock)

    def test_warning_alerts_once(self, controller, ledger, notifier):
        _spend(ledger, 81.0)

        controller.check_and_alert()
        controller.check_and_alert()

        assert len(notifier.sent) == 1
        title, body = notifier.sent[0]
        assert title.startswith("Warning: LLM spend at 81.0%")
        assert "Spent: $81.00 of $100.00" in body

    def test_critical_after_warning_respects_cooldown(self, controller, ledger, clock, notifier):
        _spend(ledger, 81.0)
        controller.check_and_alert()
        _spend(ledger, 15.0)

        controller.check_and_alert()
        assert len(notifier.sent) == 1

        clock.advance(timedelta(minutes=61))
        status = controller.check_and_alert()

        assert status.state == BudgetState.CRITICAL
        assert len(notifier.sent) == 2
        assert notifier.sent[1][0].startswith("CRITICAL")

    def test_drop_to_normal_rearms(self, controller, ledger, clock, notifier):
        _spend(ledger, 85.0)
        controller.check_and_alert()

        controller.update_config(monthly=1000.0)
        controller.check_and_alert()
        controller.update_config(monthly=100.0)
        clock.advance(timedelta(minutes=61))
        controller.check_and_alert()

        assert len(notifier.sent) == 2

    def test_normal_state_never_alerts(self, controller, ledger, notifier):
        _spend(ledger, 10.0)

        controller.check_and_alert()

        assert notifier.sent == []

    def test_alerts_disabled(self, ledger, clock, notifier):
        controller = BudgetController(ledger, BudgetConfig(monthly=100.0, alerts_enabled=False), notifier, clock)
        _spend(ledger, 99.0)

        assert controller.check_and_alert().state == BudgetState.CRITICAL
        assert notifier.sent == []

    def test_failing_notifier_does_not_raise(self, ledger, clock):
        class Exploding:
            def notify(self, title, body):
                raise ConnectionError("webhook down")

        controller = BudgetController(ledger, BudgetConfig(monthly=100.0), Exploding(), clock)
        _spend(ledger, 99.0)

        assert controller.check_and_alert().state == BudgetState.CRITICAL
