"""
Repository pattern for data access.

SQLite-backed stores for the cost ledger, the retry queue and the retry
execution history. Each operation opens a short-lived connection.
"""

import json
from datetime import datetime
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection, to_db_time
from .models import (
    CostLedgerEntry,
    ExecutionHistoryEntry,
    LedgerCategory,
    RetryStatus,
    RetryTaskRecord,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, retry and history tables if they don't exist.

    The cost ledger is append-only: rows are only ever inserted, and only
    the retention sweep deletes rows older than the retention horizon.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cost_ledger_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                category TEXT NOT NULL,
                backend_id TEXT NOT NULL,
                amount REAL NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_cost_ledger_entry_timestamp
            ON cost_ledger_entry (timestamp)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS retry_task (
                id TEXT PRIMARY KEY,
                task_kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                next_eligible_at TEXT NOT NULL,
                status TEXT NOT NULL,
                last_error TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_retry_task_due
            ON retry_task (status, next_eligible_at)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS retry_execution_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL,
                task_kind TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                executed_at TEXT NOT NULL,
                duration_ms REAL NOT NULL,
                error TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_entry(row) -> CostLedgerEntry:
    return CostLedgerEntry(
        timestamp=datetime.fromisoformat(row[0]),
        category=LedgerCategory(row[1]),
        backend_id=row[2],
        amount=row[3],
        metadata=json.loads(row[4]) if row[4] else {},
    )


def _row_to_record(row) -> RetryTaskRecord:
    return RetryTaskRecord(
        id=row[0],
        task_kind=row[1],
        payload=json.loads(row[2]),
        attempt=row[3],
        max_attempts=row[4],
        next_eligible_at=datetime.fromisoformat(row[5]),
        status=RetryStatus(row[6]),
        last_error=row[7],
        created_at=datetime.fromisoformat(row[8]),
        completed_at=datetime.fromisoformat(row[9]) if row[9] else None,
    )


_RECORD_COLUMNS = (
    "id, task_kind, payload, attempt, max_attempts, next_eligible_at, "
    "status, last_error, created_at, completed_at"
)


class SqliteLedgerStore:
    """Append-only cost ledger table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entry: CostLedgerEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO cost_ledger_entry
                (timestamp, category, backend_id, amount, metadata)
                VALUES (?, ?, ?, ?, ?)
            """, (
                to_db_time(entry.timestamp),
                entry.category.value,
                entry.backend_id,
                entry.amount,
                json.dumps(entry.metadata, default=str),
            ))
            conn.commit()
        finally:
            conn.close()

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        category: Optional[LedgerCategory] = None,
    ) -> List[CostLedgerEntry]:
        """Entries in [start, end), oldest first."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT timestamp, category, backend_id, amount, metadata FROM cost_ledger_entry"
            params = []
            conditions = []

            if start is not None:
                conditions.append("timestamp >= ?")
                params.append(to_db_time(start))
            if end is not None:
                conditions.append("timestamp < ?")
                params.append(to_db_time(end))
            if category is not None:
                conditions.append("category = ?")
                params.append(category.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY timestamp ASC, id ASC"

            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def delete_before(self, cutoff: datetime) -> int:
        """Retention sweep; the only delete the ledger allows."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM cost_ledger_entry WHERE timestamp < ?",
                (to_db_time(cutoff),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


class SqliteRetryStore:
    """Retry task records keyed by id."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, record: RetryTaskRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO retry_task ({_RECORD_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.task_kind,
                json.dumps(record.payload),
                record.attempt,
                record.max_attempts,
                to_db_time(record.next_eligible_at),
                record.status.value,
                record.last_error,
                to_db_time(record.created_at),
                to_db_time(record.completed_at) if record.completed_at else None,
            ))
            conn.commit()
        finally:
            conn.close()

    def get(self, record_id: str) -> Optional[RetryTaskRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM retry_task WHERE id = ?",
                (record_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def due(self, now: datetime, limit: int) -> List[RetryTaskRecord]:
        """Pending records eligible at ``now``, earliest eligibility first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_RECORD_COLUMNS} FROM retry_task
                WHERE status = ? AND next_eligible_at <= ?
                ORDER BY next_eligible_at ASC, created_at ASC
                LIMIT ?
            """, (RetryStatus.PENDING.value, to_db_time(now), limit))
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def by_status(self, status: Optional[RetryStatus] = None, limit: int = 100) -> List[RetryTaskRecord]:
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_RECORD_COLUMNS} FROM retry_task"
            params = []
            if status is not None:
                query += " WHERE status = ?"
                params.append(status.value)
            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)
            cursor = conn.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update(self, record: RetryTaskRecord, expected_status: RetryStatus, expected_attempt: int) -> bool:
        """Write ``record`` only if the stored row is still in the expected state.

        Returns:
            True if the row was updated, False if another writer got there first
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE retry_task
                SET attempt = ?, next_eligible_at = ?, status = ?,
                    last_error = ?, completed_at = ?
                WHERE id = ? AND status = ? AND attempt = ?
            """, (
                record.attempt,
                to_db_time(record.next_eligible_at),
                record.status.value,
                record.last_error,
                to_db_time(record.completed_at) if record.completed_at else None,
                record.id,
                expected_status.value,
                expected_attempt,
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def delete_finished_before(self, cutoff: datetime) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM retry_task
                WHERE status != ? AND completed_at IS NOT NULL AND completed_at < ?
            """, (RetryStatus.PENDING.value, to_db_time(cutoff)))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def counts(self) -> Dict[str, int]:
        """Number of records per status."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT status, COUNT(*) FROM retry_task GROUP BY status")
            return {row[0]: row[1] for row in cursor.fetchall()}
        finally:
            conn.close()


class SqliteHistoryStore:
    """Append-only retry execution history."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entry: ExecutionHistoryEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO retry_execution_history
                (record_id, task_kind, attempt, status, executed_at, duration_ms, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.record_id,
                entry.task_kind,
                entry.attempt,
                entry.status.value,
                to_db_time(entry.executed_at),
                entry.duration_ms,
                entry.error,
            ))
            conn.commit()
        finally:
            conn.close()

    def recent(self, record_id: Optional[str] = None, limit: int = 100) -> List[ExecutionHistoryEntry]:
        """Most recent executions, newest first."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT record_id, task_kind, attempt, status, executed_at, duration_ms, error
                FROM retry_execution_history
            """
            params = []
            if record_id is not None:
                query += " WHERE record_id = ?"
                params.append(record_id)
            query += " ORDER BY executed_at DESC, id DESC LIMIT ?"
            params.append(limit)
            cursor = conn.execute(query, params)
            return [
                ExecutionHistoryEntry(
                    record_id=row[0],
                    task_kind=row[1],
                    attempt=row[2],
                    status=RetryStatus(row[3]),
                    executed_at=datetime.fromisoformat(row[4]),
                    duration_ms=row[5],
                    error=row[6],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
