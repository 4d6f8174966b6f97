"""
In-memory stores.

Same interface as the SQLite stores. Used when persistence is unavailable
and in tests; contents are lost when the process exits.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from .models import (
    CostLedgerEntry,
    ExecutionHistoryEntry,
    LedgerCategory,
    RetryStatus,
    RetryTaskRecord,
)


class MemoryLedgerStore:
    def __init__(self):
        self._entries: List[CostLedgerEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: CostLedgerEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        category: Optional[LedgerCategory] = None,
    ) -> List[CostLedgerEntry]:
        with self._lock:
            entries = list(self._entries)
        return sorted(
            (
                e for e in entries
                if (start is None or e.timestamp >= start)
                and (end is None or e.timestamp < end)
                and (category is None or e.category == category)
            ),
            key=lambda e: e.timestamp,
        )

    def delete_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [e for e in self._entries if e.timestamp >= cutoff]
            removed = len(self._entries) - len(kept)
            self._entries = kept
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MemoryRetryStore:
    def __init__(self):
        self._records: Dict[str, RetryTaskRecord] = {}
        self._lock = threading.Lock()

    def insert(self, record: RetryTaskRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Duplicate retry record id: {record.id}")
            self._records[record.id] = record

    def upsert(self, record: RetryTaskRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, record_id: str) -> Optional[RetryTaskRecord]:
        with self._lock:
            return self._records.get(record_id)

    def due(self, now: datetime, limit: int) -> List[RetryTaskRecord]:
        with self._lock:
            pending = [
                r for r in self._records.values()
                if r.status == RetryStatus.PENDING and r.next_eligible_at <= now
            ]
        pending.sort(key=lambda r: (r.next_eligible_at, r.created_at))
        return pending[:limit]

    def by_status(self, status: Optional[RetryStatus] = None, limit: int = 100) -> List[RetryTaskRecord]:
        with self._lock:
            records = [r for r in self._records.values() if status is None or r.status == status]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def update(self, record: RetryTaskRecord, expected_status: RetryStatus, expected_attempt: int) -> bool:
        with self._lock:
            current = self._records.get(record.id)
            if current is None or current.status != expected_status or current.attempt != expected_attempt:
                return False
            self._records[record.id] = replace(record)
            return True

    def delete_finished_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                record_id for record_id, r in self._records.items()
                if r.terminal and r.completed_at is not None and r.completed_at < cutoff
            ]
            for record_id in stale:
                del self._records[record_id]
        return len(stale)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            statuses = [r.status.value for r in self._records.values()]
        return {status: statuses.count(status) for status in set(statuses)}


class MemoryHistoryStore:
    def __init__(self):
        self._entries: List[ExecutionHistoryEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: ExecutionHistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(self, record_id: Optional[str] = None, limit: int = 100) -> List[ExecutionHistoryEntry]:
        with self._lock:
            entries = [e for e in self._entries if record_id is None or e.record_id == record_id]
        entries.sort(key=lambda e: e.executed_at, reverse=True)
        return entries[:limit]
