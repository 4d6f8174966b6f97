"""
Cost ledger.

Append-only record of generation spend and cache savings; the single
source of truth for every cost aggregate. Savings from cache hits are
reported separately and never netted against spend.
"""

import sqlite3
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from ai_route_guard.storage.memory import MemoryLedgerStore
from ai_route_guard.storage.models import CostLedgerEntry, LedgerCategory, LedgerStore

from .scheduling import Clock, SystemClock

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BackendSpend:
    backend_id: str
    calls: int
    total: float


class CostLedger:
    """Records and aggregates cost entries.

    Writes go to the primary store. If the primary store fails with a
    database error the ledger logs a warning and keeps operating on an
    in-memory store; reads always merge both.
    """

    def __init__(self, store: Optional[LedgerStore] = None, clock: Optional[Clock] = None):
        self._primary = store
        self._fallback = MemoryLedgerStore()
        self._clock = clock or SystemClock()
        self._degraded = False
        self._degraded_lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self._degraded

    def record(
        self,
        category: LedgerCategory,
        backend_id: str,
        amount: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CostLedgerEntry:
        """Append one entry timestamped now.

        Args:
            category: generation-call or avoided-via-cache
            backend_id: Backend the amount is attributed to
            amount: Cost in dollars, non-negative
            metadata: Free-form context stored with the entry

        Returns:
            The appended entry
        """
        entry = CostLedgerEntry(
            timestamp=self._clock.now(),
            category=LedgerCategory(category),
            backend_id=backend_id,
            amount=amount,
            metadata=dict(metadata or {}),
        )
        if self._primary is not None:
            try:
                self._primary.append(entry)
                return entry
            except sqlite3.Error as e:
                self._mark_degraded("append", e)
        self._fallback.append(entry)
        return entry

    def entries(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        category: Optional[LedgerCategory] = None,
    ) -> List[CostLedgerEntry]:
        """Entries in [start, end), oldest first."""
        entries = self._fallback.query(start, end, category)
        if self._primary is not None:
            try:
                entries = self._primary.query(start, end, category) + entries
            except sqlite3.Error as e:
                self._mark_degraded("query", e)
        return sorted(entries, key=lambda e: e.timestamp)

    def totals_for_period(
        self,
        start: datetime,
        end: datetime,
        category: LedgerCategory = LedgerCategory.GENERATION_CALL,
    ) -> float:
        """Sum of amounts for ``category`` in [start, end)."""
        return sum(e.amount for e in self.entries(start, end, category))

    def breakdown_by_backend(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[BackendSpend]:
        """Generation spend per backend, largest first."""
        calls: Dict[str, int] = defaultdict(int)
        totals: Dict[str, float] = defaultdict(float)
        for entry in self.entries(start, end, LedgerCategory.GENERATION_CALL):
            calls[entry.backend_id] += 1
            totals[entry.backend_id] += entry.amount
        breakdown = [BackendSpend(backend_id, calls[backend_id], totals[backend_id]) for backend_id in totals]
        return sorted(breakdown, key=lambda b: (-b.total, b.backend_id))

    def cache_avoided_total(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> float:
        """Spend avoided by cache hits; reporting only."""
        return sum(e.amount for e in self.entries(start, end, LedgerCategory.AVOIDED_VIA_CACHE))

    def daily_totals(self, days: int = 7) -> Dict[date, float]:
        """Generation spend per calendar day for the last ``days`` days, including today."""
        today = self._clock.now().date()
        first = today - timedelta(days=days - 1)
        totals = {first + timedelta(days=i): 0.0 for i in range(days)}
        start = datetime.combine(first, datetime.min.time())
        for entry in self.entries(start=start, category=LedgerCategory.GENERATION_CALL):
            day = entry.timestamp.date()
            if day in totals:
                totals[day] += entry.amount
        return totals

    def monthly_totals(self, months: int = 3) -> Dict[str, float]:
        """Generation spend per calendar month (``YYYY-MM``), oldest first."""
        now = self._clock.now()
        year, month = now.year, now.month
        keys = []
        for _ in range(months):
            keys.append((year, month))
            month -= 1
            if month == 0:
                year, month = year - 1, 12
        keys.reverse()

        totals = {f"{y:04d}-{m:02d}": 0.0 for y, m in keys}
        start = datetime(keys[0][0], keys[0][1], 1)
        for entry in self.entries(start=start, category=LedgerCategory.GENERATION_CALL):
            key = f"{entry.timestamp.year:04d}-{entry.timestamp.month:02d}"
            if key in totals:
                totals[key] += entry.amount
        return totals

    def purge_older_than(self, retention_days: int = 90) -> int:
        """Retention sweep: delete entries older than the horizon.

        Returns:
            Number of entries removed
        """
        cutoff = self._clock.now() - timedelta(days=retention_days)
        removed = self._fallback.delete_before(cutoff)
        if self._primary is not None:
            try:
                removed += self._primary.delete_before(cutoff)
            except sqlite3.Error as e:
                self._mark_degraded("retention", e)
        log.info("ledger.retention_swept", removed=removed, cutoff=cutoff.isoformat(timespec="seconds"))
        return removed

    def _mark_degraded(self, operation: str, error: Exception) -> None:
        with self._degraded_lock:
            first = not self._degraded
            self._degraded = True
        log.warning(
            "ledger.persistence_degraded",
            operation=operation,
            error=str(error),
            first_failure=first,
        )
