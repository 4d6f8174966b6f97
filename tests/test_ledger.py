"""
Tests for the cost ledger.
"""

import os
import sqlite3
import tempfile
from datetime import date, datetime, timedelta

import pytest

from ai_route_guard.core.ledger import BackendSpend, CostLedger
from ai_route_guard.storage.memory import MemoryLedgerStore
from ai_route_guard.storage.models import LedgerCategory
from ai_route_guard.storage.repository import SqliteLedgerStore, initialize_schema


class BrokenLedgerStore:
    """Store whose database is gone."""

    def append(self, entry):
        raise sqlite3.OperationalError("disk I/O error")

    def query(self, start=None, end=None, category=None):
        raise sqlite3.OperationalError("disk I/O error")

    def delete_before(self, cutoff):
        raise sqlite3.OperationalError("disk I/O error")


class TestRecording:
    """Test appending entries."""

    def test_record_timestamps_with_clock(self, clock):
        ledger = CostLedger(MemoryLedgerStore(), clock)

        entry = ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03, {"complexity": "complex"})

        assert entry.timestamp == clock.now()
        assert ledger.entries() == [entry]

    def test_negative_amount_rejected(self, clock):
        ledger = CostLedger(MemoryLedgerStore(), clock)

        with pytest.raises(ValueError):
            ledger.record(LedgerCategory.GENERATION_CALL, "premium", -1.0)
        assert ledger.entries() == []

    def test_category_accepts_value_string(self, clock):
        ledger = CostLedger(MemoryLedgerStore(), clock)

        entry = ledger.record("avoided-via-cache", "zero", 0.0)

        assert entry.category == LedgerCategory.AVOIDED_VIA_CACHE

    def test_persists_to_sqlite(self, clock):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "ledger.db")
            initialize_schema(db_path)
            CostLedger(SqliteLedgerStore(db_path), clock).record(LedgerCategory.GENERATION_CALL, "premium", 0.03)

            reopened = CostLedger(SqliteLedgerStore(db_path), clock)

            assert reopened.totals_for_period(clock.now(), clock.now() + timedelta(seconds=1)) == 0.03


class TestAggregates:
    """Test period totals and breakdowns."""

    @pytest.fixture
    def ledger(self, clock):
        ledger = CostLedger(MemoryLedgerStore(), clock)
        ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03)
        ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03)
        ledger.record(LedgerCategory.GENERATION_CALL, "economy", 0.002)
        ledger.record(LedgerCategory.AVOIDED_VIA_CACHE, "premium", 0.03)
        return ledger

    def test_totals_exclude_cache_savings(self, ledger, clock):
        start, end = clock.now(), clock.now() + timedelta(seconds=1)

        assert ledger.totals_for_period(start, end) == pytest.approx(0.062)
        assert ledger.totals_for_period(start, end, LedgerCategory.AVOIDED_VIA_CACHE) == pytest.approx(0.03)
        assert ledger.cache_avoided_total() == pytest.approx(0.03)

    def test_period_end_is_exclusive(self, ledger, clock):
        assert ledger.totals_for_period(clock.now() - timedelta(days=1), clock.now()) == 0.0

    def test_breakdown_largest_first(self, ledger):
        assert ledger.breakdown_by_backend() == [
            BackendSpend("premium", 2, pytest.approx(0.06)),
            BackendSpend("economy", 1, pytest.approx(0.002)),
        ]

    def test_daily_totals(self, ledger, clock):
        clock.advance(timedelta(days=1))
        ledger.record(LedgerCategory.GENERATION_CALL, "zero", 0.0)
        ledger.record(LedgerCategory.GENERATION_CALL, "economy", 0.004)

        totals = ledger.daily_totals(days=3)

        assert list(totals) == [date(2024, 1, 14), date(2024, 1, 15), date(2024, 1, 16)]
        assert totals[date(2024, 1, 14)] == 0.0
        assert totals[date(2024, 1, 15)] == pytest.approx(0.062)
        assert totals[date(2024, 1, 16)] == pytest.approx(0.004)

    def test_monthly_totals_span_year_boundary(self, ledger, clock):
        clock.set(datetime(2023, 12, 31, 23, 0))
        ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.5)
        clock.set(datetime(2024, 2, 1, 9, 0))

        totals = ledger.monthly_totals(months=3)

        assert list(totals) == ["2023-12", "2024-01", "2024-02"]
        assert totals["2023-12"] == pytest.approx(0.5)
        assert totals["2024-01"] == pytest.approx(0.062)
        assert totals["2024-02"] == 0.0


class TestRetention:
    """Test the retention sweep."""

    def test_purge_older_than(self, clock):
        ledger = CostLedger(MemoryLedgerStore(), clock)
        ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03)
        clock.advance(timedelta(days=100))
        ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.01)

        removed = ledger.purge_older_than(retention_days=90)

        assert removed == 1
        assert [e.amount for e in ledger.entries()] == [0.01]


class TestDegradedPersistence:
    """Test the in-memory fallback when the database fails."""

    def test_write_falls_back_to_memory(self, clock):
        ledger = CostLedger(BrokenLedgerStore(), clock)

        entry = ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03)

        assert ledger.degraded is True
        assert ledger.entries() == [entry]
        assert ledger.purge_older_than(90) == 0

    def test_no_store_is_memory_only(self, clock):
        ledger = CostLedger(clock=clock)
        ledger.record(LedgerCategory.GENERATION_CALL, "premium", 0.03)

        assert ledger.degraded is False
        assert len(ledger.entries()) == 1
