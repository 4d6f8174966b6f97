"""
Unit tests for storage layer.

Tests schema creation and the SQLite and in-memory stores behind the
ledger, the retry queue and the execution history.
"""

import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from ai_route_guard.storage.db import get_connection
from ai_route_guard.storage.memory import MemoryHistoryStore, MemoryLedgerStore, MemoryRetryStore
from ai_route_guard.storage.models import (
    CostLedgerEntry,
    ExecutionHistoryEntry,
    LedgerCategory,
    RetryStatus,
    RetryTaskRecord,
)
from ai_route_guard.storage.repository import (
    SqliteHistoryStore,
    SqliteLedgerStore,
    SqliteRetryStore,
    initialize_schema,
)

T0 = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "nested", "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture(params=["sqlite", "memory"])
def ledger_store(request, db_path):
    return SqliteLedgerStore(db_path) if request.param == "sqlite" else MemoryLedgerStore()


@pytest.fixture(params=["sqlite", "memory"])
def retry_store(request, db_path):
    return SqliteRetryStore(db_path) if request.param == "sqlite" else MemoryRetryStore()


@pytest.fixture(params=["sqlite", "memory"])
def history_store(request, db_path):
    return SqliteHistoryStore(db_path) if request.param == "sqlite" else MemoryHistoryStore()


def _entry(offset_minutes=0, amount=0.01, backend_id="premium", category=LedgerCategory.GENERATION_CALL, **metadata):
    return CostLedgerEntry(
        timestamp=T0 + timedelta(minutes=offset_minutes),
        category=category,
        backend_id=backend_id,
        amount=amount,
        metadata=metadata,
    )


def _record(record_id="r1", attempt=0, eligible_offset=0, status=RetryStatus.PENDING, **kwargs):
    return RetryTaskRecord(
        id=record_id,
        task_kind="generation",
        payload={"prompt": "hello", "context": []},
        attempt=attempt,
        max_attempts=3,
        next_eligible_at=T0 + timedelta(seconds=eligible_offset),
        status=status,
        created_at=T0 + timedelta(microseconds=len(record_id)),
        **kwargs,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify tables are created, including the parent directory."""
        conn = get_connection(db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()

        assert {"cost_ledger_entry", "retry_task", "retry_execution_history"} <= tables

    def test_schema_is_idempotent(self, db_path):
        """Running initialization twice keeps existing rows."""
        SqliteLedgerStore(db_path).append(_entry())

        initialize_schema(db_path)

        assert len(SqliteLedgerStore(db_path).query()) == 1


class TestModels:
    """Test record validation."""

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            _entry(amount=-0.01)

    def test_empty_backend_rejected(self):
        with pytest.raises(ValueError):
            _entry(backend_id="")

    def test_attempt_bounds(self):
        with pytest.raises(ValueError):
            _record(attempt=4)
        with pytest.raises(ValueError):
            _record(attempt=-1)

    def test_terminal(self):
        assert _record().terminal is False
        assert _record(status=RetryStatus.FAILED).terminal is True


class TestLedgerStore:
    """Test ledger stores."""

    def test_query_half_open_range(self, ledger_store):
        """Entries in [start, end) oldest first."""
        ledger_store.append(_entry(10, amount=0.02))
        ledger_store.append(_entry(0, amount=0.01))
        ledger_store.append(_entry(20, amount=0.03))

        entries = ledger_store.query(T0, T0 + timedelta(minutes=20))

        assert [e.amount for e in entries] == [0.01, 0.02]

    def test_query_by_category(self, ledger_store):
        ledger_store.append(_entry(0))
        ledger_store.append(_entry(1, category=LedgerCategory.AVOIDED_VIA_CACHE))

        cached = ledger_store.query(category=LedgerCategory.AVOIDED_VIA_CACHE)

        assert len(cached) == 1
        assert cached[0].category == LedgerCategory.AVOIDED_VIA_CACHE

    def test_metadata_round_trip(self, ledger_store):
        ledger_store.append(_entry(0, complexity="medium", prompt_tokens=12))

        entry = ledger_store.query()[0]

        assert entry.metadata == {"complexity": "medium", "prompt_tokens": 12}
        assert entry.timestamp == T0

    def test_delete_before(self, ledger_store):
        ledger_store.append(_entry(0))
        ledger_store.append(_entry(60))

        removed = ledger_store.delete_before(T0 + timedelta(minutes=30))

        assert removed == 1
        assert [e.timestamp for e in ledger_store.query()] == [T0 + timedelta(minutes=60)]


class TestRetryStore:
    """Test retry record stores."""

    def test_insert_and_get(self, retry_store):
        retry_store.insert(_record(last_error="timeout"))

        record = retry_store.get("r1")

        assert record == _record(last_error="timeout")
        assert retry_store.get("missing") is None

    def test_duplicate_id_rejected(self, retry_store):
        retry_store.insert(_record())

        with pytest.raises(Exception):
            retry_store.insert(_record())

    def test_due_orders_by_eligibility(self, retry_store):
        retry_store.insert(_record("late", eligible_offset=30))
        retry_store.insert(_record("early", eligible_offset=10))
        retry_store.insert(_record("future", eligible_offset=600))
        retry_store.insert(_record("done", status=RetryStatus.SUCCEEDED, completed_at=T0))

        due = retry_store.due(T0 + timedelta(seconds=60), limit=10)

        assert [r.id for r in due] == ["early", "late"]
        assert [r.id for r in retry_store.due(T0 + timedelta(seconds=60), limit=1)] == ["early"]

    def test_conditional_update(self, retry_store):
        """Only the writer holding the expected state wins."""
        retry_store.insert(_record())
        advanced = replace(_record(), attempt=1, next_eligible_at=T0 + timedelta(seconds=60))

        assert retry_store.update(advanced, RetryStatus.PENDING, 0) is True
        assert retry_store.update(advanced, RetryStatus.PENDING, 0) is False
        assert retry_store.get("r1").attempt == 1

    def test_by_status_and_counts(self, retry_store):
        retry_store.insert(_record("a"))
        retry_store.insert(_record("bb", status=RetryStatus.FAILED, completed_at=T0))
        retry_store.insert(_record("ccc", status=RetryStatus.FAILED, completed_at=T0))

        failed = retry_store.by_status(RetryStatus.FAILED)

        assert [r.id for r in failed] == ["ccc", "bb"]
        assert len(retry_store.by_status()) == 3
        assert retry_store.counts() == {"pending": 1, "failed": 2}

    def test_delete_finished_before(self, retry_store):
        retry_store.insert(_record("a"))
        retry_store.insert(_record("bb", status=RetryStatus.SUCCEEDED, completed_at=T0))
        retry_store.insert(_record("ccc", status=RetryStatus.FAILED, completed_at=T0 + timedelta(days=10)))

        removed = retry_store.delete_finished_before(T0 + timedelta(days=1))

        assert removed == 1
        assert retry_store.get("bb") is None
        assert retry_store.get("a") is not None
        assert retry_store.get("ccc") is not None


class TestHistoryStore:
    """Test execution history stores."""

    def test_recent_newest_first(self, history_store):
        for attempt in range(3):
            history_store.append(ExecutionHistoryEntry(
                record_id="r1",
                task_kind="generation",
                attempt=attempt,
                status=RetryStatus.PENDING,
                executed_at=T0 + timedelta(minutes=attempt),
                duration_ms=12.5,
                error="timeout",
            ))
        history_store.append(ExecutionHistoryEntry(
            record_id="r2",
            task_kind="generation",
            attempt=0,
            status=RetryStatus.SUCCEEDED,
            executed_at=T0,
            duration_ms=3.0,
        ))

        entries = history_store.recent("r1", limit=2)

        assert [e.attempt for e in entries] == [2, 1]
        assert entries[0].error == "timeout"
        assert len(history_store.recent()) == 4
