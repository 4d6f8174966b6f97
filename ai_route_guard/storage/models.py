"""
Data models for storage layer.

Defines persisted records and the store interfaces the core depends on.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol


class LedgerCategory(str, Enum):
    GENERATION_CALL = "generation-call"
    AVOIDED_VIA_CACHE = "avoided-via-cache"


class RetryStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CostLedgerEntry:
    """Immutable record of one cost event.

    Append-only: once written, entries are never modified. Only the
    retention sweep removes entries past the retention horizon.
    """
    timestamp: datetime
    category: LedgerCategory
    backend_id: str
    amount: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("amount must be non-negative")
        if not self.backend_id:
            raise ValueError("backend_id must be non-empty")


@dataclass(frozen=True)
class RetryTaskRecord:
    """Durably queued task waiting for another attempt."""
    id: str
    task_kind: str
    payload: Dict[str, Any]
    attempt: int
    max_attempts: int
    next_eligible_at: datetime
    status: RetryStatus
    created_at: datetime
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.attempt < 0 or self.attempt > self.max_attempts:
            raise ValueError("attempt must be between 0 and max_attempts")

    @property
    def terminal(self) -> bool:
        return self.status != RetryStatus.PENDING


@dataclass(frozen=True)
class ExecutionHistoryEntry:
    """One executed retry attempt, success or failure."""
    record_id: str
    task_kind: str
    attempt: int
    status: RetryStatus
    executed_at: datetime
    duration_ms: float
    error: Optional[str] = None


class LedgerStore(Protocol):
    def append(self, entry: CostLedgerEntry) -> None:
        ...

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        category: Optional[LedgerCategory] = None,
    ) -> List[CostLedgerEntry]:
        ...

    def delete_before(self, cutoff: datetime) -> int:
        ...


class RetryStore(Protocol):
    def insert(self, record: RetryTaskRecord) -> None:
        ...

    def get(self, record_id: str) -> Optional[RetryTaskRecord]:
        ...

    def due(self, now: datetime, limit: int) -> List[RetryTaskRecord]:
        ...

    def by_status(self, status: Optional[RetryStatus] = None, limit: int = 100) -> List[RetryTaskRecord]:
        ...

    def update(self, record: RetryTaskRecord, expected_status: RetryStatus, expected_attempt: int) -> bool:
        ...

    def delete_finished_before(self, cutoff: datetime) -> int:
        ...

    def counts(self) -> Dict[str, int]:
        ...


class HistoryStore(Protocol):
    def append(self, entry: ExecutionHistoryEntry) -> None:
        ...

    def recent(self, record_id: Optional[str] = None, limit: int = 100) -> List[ExecutionHistoryEntry]:
        ...
