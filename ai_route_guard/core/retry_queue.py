"""
Durable retry queue.

Holds tasks whose every live backend attempt failed. A periodic sweep
re-runs due tasks through the executor registered for their kind, with
exponential backoff between attempts and a hard cap on attempts.

Record lifecycle:
    pending --success--> succeeded
    pending --failure, attempts left--> pending (attempt + 1, later eligibility)
    pending --failure, no attempts left--> failed (operator alert)

Succeeded and failed are terminal. Every execution is also appended to
the execution history, independent of the record's lifecycle.
"""

import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from ai_route_guard.config.loader import RetryConfig
from ai_route_guard.storage.memory import MemoryHistoryStore, MemoryRetryStore
from ai_route_guard.storage.models import (
    ExecutionHistoryEntry,
    HistoryStore,
    RetryStatus,
    RetryStore,
    RetryTaskRecord,
)

from .alerts import Notifier, notify_safely
from .errors import RetryQueueError, UnknownTaskKindError
from .scheduling import Clock, KeyedLocks, SystemClock
from .tasks import TASK_PAYLOADS, parse_task_payload

log = structlog.get_logger(__name__)

# Executors raise to signal failure
TaskExecutor = Callable[[Dict[str, Any]], Any]


def compute_backoff_delay(
    attempt: int,
    initial_delay: float = 30.0,
    multiplier: float = 2.0,
    max_delay: float = 600.0,
) -> timedelta:
    """Delay before the next attempt: min(initial * multiplier^attempt, max).

    Args:
        attempt: Number of retry executions already performed
        initial_delay: Delay in seconds for attempt 0
        multiplier: Growth factor per attempt
        max_delay: Ceiling in seconds

    Returns:
        Delay as a timedelta
    """
    if attempt < 0:
        raise ValueError("attempt cannot be negative")
    return timedelta(seconds=min(initial_delay * multiplier ** attempt, max_delay))


@dataclass
class SweepReport:
    """Outcome counts for one sweep."""
    processed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    failed: int = 0
    skipped: int = 0
    record_ids: List[str] = field(default_factory=list)


class RetryQueue:
    """Retry queue over a record store and an execution-history store.

    Mutations of one record are serialized by a per-record lock and
    written with an optimistic status/attempt check. On a database error
    the queue logs a warning and continues on in-memory stores.
    """

    def __init__(
        self,
        store: Optional[RetryStore] = None,
        history: Optional[HistoryStore] = None,
        config: Optional[RetryConfig] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ):
        self._primary = store
        self._primary_history = history
        self._fallback = MemoryRetryStore()
        self._fallback_history = MemoryHistoryStore()
        self.config = config or RetryConfig()
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._executors: Dict[str, TaskExecutor] = {}
        self._locks = KeyedLocks()
        self._degraded = False
        self._degraded_lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        return self._degraded

    def register_executor(self, task_kind: str, executor: TaskExecutor) -> None:
        self._executors[task_kind] = executor
        log.info("retry.executor_registered", task_kind=task_kind)

    def next_delay(self, attempt: int) -> timedelta:
        return compute_backoff_delay(
            attempt,
            self.config.initial_delay_seconds,
            self.config.backoff_multiplier,
            self.config.max_delay_seconds,
        )

    def enqueue(
        self,
        task_kind: str,
        payload: Dict[str, Any],
        attempt: int = 0,
        max_attempts: Optional[int] = None,
        error: Optional[str] = None,
    ) -> RetryTaskRecord:
        """Persist a pending record eligible after the backoff delay.

        Args:
            task_kind: Kind of task; selects payload type and executor
            payload: Task payload, validated for typed task kinds
            attempt: Retry executions already performed
            max_attempts: Attempt cap; defaults to the configured value
            error: Error that caused the enqueue

        Returns:
            The new pending record

        Raises:
            UnknownTaskKindError: If the kind has neither a payload type nor an executor
            PayloadValidationError: If the payload is malformed
            RetryQueueError: If no attempts remain
        """
        if task_kind in TASK_PAYLOADS:
            payload = parse_task_payload(task_kind, payload).to_dict()
        elif task_kind not in self._executors:
            raise UnknownTaskKindError(task_kind)

        max_attempts = max_attempts or self.config.max_attempts
        if attempt >= max_attempts:
            raise RetryQueueError(f"attempt {attempt} leaves no retries under max_attempts {max_attempts}")

        now = self._clock.now()
        record = RetryTaskRecord(
            id=uuid.uuid4().hex,
            task_kind=task_kind,
            payload=dict(payload),
            attempt=attempt,
            max_attempts=max_attempts,
            next_eligible_at=now + self.next_delay(attempt),
            status=RetryStatus.PENDING,
            created_at=now,
            last_error=error,
        )
        self._insert(record)
        log.info(
            "retry.enqueued",
            record_id=record.id,
            task_kind=task_kind,
            attempt=attempt,
            max_attempts=max_attempts,
            next_eligible_at=record.next_eligible_at.isoformat(timespec="seconds"),
            error=error,
        )
        return record

    def sweep(self, limit: Optional[int] = None) -> SweepReport:
        """Execute up to ``limit`` due records, earliest eligibility first."""
        report = SweepReport()
        for record in self._due(self._clock.now(), limit or self.config.sweep_batch_size):
            outcome = self._execute(record)
            if outcome is None:
                report.skipped += 1
                continue
            report.processed += 1
            report.record_ids.append(record.id)
            if outcome == RetryStatus.SUCCEEDED:
                report.succeeded += 1
            elif outcome == RetryStatus.FAILED:
                report.failed += 1
            else:
                report.rescheduled += 1

        if report.processed or report.skipped:
            log.info(
                "retry.sweep_completed",
                processed=report.processed,
                succeeded=report.succeeded,
                rescheduled=report.rescheduled,
                failed=report.failed,
                skipped=report.skipped,
            )
        return report

    def _execute(self, record: RetryTaskRecord) -> Optional[RetryStatus]:
        """Run one record; returns its new status or None if skipped."""
        lock = self._locks(record.id)
        if not lock.acquire(blocking=False):
            return None
        try:
            current = self._get(record.id)
            if current is None or current.terminal:
                self._locks.discard(record.id)
                return None
            if current.next_eligible_at > self._clock.now():
                return None

            executor = self._executors.get(current.task_kind)
            started = time.perf_counter()
            error = None
            if executor is None:
                error = f"no executor registered for task kind '{current.task_kind}'"
            else:
                try:
                    executor(dict(current.payload))
                except Exception as e:
                    error = f"{type(e).__name__}: {e}"
            duration_ms = (time.perf_counter() - started) * 1000

            now = self._clock.now()
            executed = current.attempt + 1
            if error is None:
                updated = replace(
                    current,
                    attempt=executed,
                    status=RetryStatus.SUCCEEDED,
                    last_error=None,
                    completed_at=now,
                )
            elif executed >= current.max_attempts:
                updated = replace(
                    current,
                    attempt=executed,
                    status=RetryStatus.FAILED,
                    last_error=error,
                    completed_at=now,
                )
            else:
                updated = replace(
                    current,
                    attempt=executed,
                    next_eligible_at=now + self.next_delay(executed),
                    last_error=error,
                )

            self._append_history(ExecutionHistoryEntry(
                record_id=current.id,
                task_kind=current.task_kind,
                attempt=executed,
                status=RetryStatus.SUCCEEDED if error is None else RetryStatus.FAILED,
                executed_at=now,
                duration_ms=duration_ms,
                error=error,
            ))

            if not self._update(updated, RetryStatus.PENDING, current.attempt):
                log.warning("retry.update_conflict", record_id=current.id, attempt=current.attempt)
                return None
            if updated.terminal:
                # Terminal records are never mutated again
                self._locks.discard(current.id)

            if updated.status == RetryStatus.SUCCEEDED:
                log.info("retry.succeeded", record_id=current.id, task_kind=current.task_kind, attempt=executed)
            elif updated.status == RetryStatus.FAILED:
                self._surface_exhaustion(updated)
            else:
                log.info(
                    "retry.rescheduled",
                    record_id=current.id,
                    task_kind=current.task_kind,
                    attempt=executed,
                    next_eligible_at=updated.next_eligible_at.isoformat(timespec="seconds"),
                    error=error,
                )
            return updated.status
        finally:
            lock.release()

    def _surface_exhaustion(self, record: RetryTaskRecord) -> None:
        log.error(
            "retry.exhausted",
            record_id=record.id,
            task_kind=record.task_kind,
            attempts=record.attempt,
            error=record.last_error,
        )
        if self._notifier is not None:
            notify_safely(
                self._notifier,
                f"Retry exhausted: {record.task_kind} task {record.id}",
                f"Failed after {record.attempt} attempts.\nLast error: {record.last_error}",
            )

    def mark_succeeded(self, record_id: str) -> RetryTaskRecord:
        """Admin: close a pending record as succeeded."""
        return self._mark(record_id, RetryStatus.SUCCEEDED, None)

    def mark_failed(self, record_id: str, reason: str = "marked failed by operator") -> RetryTaskRecord:
        """Admin: close a pending record as failed."""
        return self._mark(record_id, RetryStatus.FAILED, reason)

    def _mark(self, record_id: str, status: RetryStatus, error: Optional[str]) -> RetryTaskRecord:
        with self._locks(record_id):
            current = self._get(record_id)
            if current is None or current.terminal:
                self._locks.discard(record_id)
            if current is None:
                raise RetryQueueError(f"Unknown retry record: {record_id}")
            if current.terminal:
                raise RetryQueueError(f"Retry record {record_id} is already {current.status.value}")
            updated = replace(
                current,
                status=status,
                last_error=error if error is not None else current.last_error,
                completed_at=self._clock.now(),
            )
            if not self._update(updated, RetryStatus.PENDING, current.attempt):
                raise RetryQueueError(f"Retry record {record_id} changed concurrently")
            self._locks.discard(record_id)
        log.info("retry.marked", record_id=record_id, status=status.value, reason=error)
        return updated

    def get(self, record_id: str) -> Optional[RetryTaskRecord]:
        return self._get(record_id)

    def list_records(self, status: Optional[RetryStatus] = None, limit: int = 100) -> List[RetryTaskRecord]:
        """Records newest first, optionally filtered by status."""
        records = {r.id: r for r in self._call_primary("list", lambda s: s.by_status(status, limit), [])}
        records.update({r.id: r for r in self._fallback.by_status(status, limit)})
        return sorted(records.values(), key=lambda r: r.created_at, reverse=True)[:limit]

    def history(self, record_id: Optional[str] = None, limit: int = 100) -> List[ExecutionHistoryEntry]:
        entries = self._fallback_history.recent(record_id, limit)
        if self._primary_history is not None:
            try:
                entries = self._primary_history.recent(record_id, limit) + entries
            except sqlite3.Error as e:
                self._mark_degraded("history", e)
        return sorted(entries, key=lambda e: e.executed_at, reverse=True)[:limit]

    def stats(self) -> Dict[str, int]:
        """Record counts per status plus the number currently due."""
        counts = {status.value: 0 for status in RetryStatus}
        for source in (self._call_primary("stats", lambda s: s.counts(), {}), self._fallback.counts()):
            for status, count in source.items():
                counts[status] = counts.get(status, 0) + count
        counts["due"] = len(self._due(self._clock.now(), max(1, counts[RetryStatus.PENDING.value])))
        return counts

    def cleanup(self) -> int:
        """Delete terminal records completed longer ago than the cleanup horizon."""
        cutoff = self._clock.now() - timedelta(days=self.config.cleanup_after_days)
        removed = self._fallback.delete_finished_before(cutoff)
        removed += self._call_primary("cleanup", lambda s: s.delete_finished_before(cutoff), 0)
        log.info("retry.cleanup_completed", removed=removed)
        return removed

    def report(self) -> str:
        """Human-readable queue summary."""
        stats = self.stats()
        lines = [
            "# Retry Queue Report",
            "",
            f"- Pending: {stats['pending']} ({stats['due']} due now)",
            f"- Succeeded: {stats['succeeded']}",
            f"- Failed: {stats['failed']}",
        ]
        failed = self.list_records(RetryStatus.FAILED, limit=10)
        if failed:
            lines.append("")
            lines.append("## Recently failed")
            for record in failed:
                lines.append(f"- {record.id} ({record.task_kind}, {record.attempt} attempts): {record.last_error}")
        history = self.history(limit=10)
        if history:
            lines.append("")
            lines.append("## Recent executions")
            for entry in history:
                outcome = entry.status.value if entry.error is None else f"{entry.status.value}: {entry.error}"
                lines.append(
                    f"- {entry.executed_at.isoformat(timespec='seconds')} {entry.record_id} "
                    f"attempt {entry.attempt} ({entry.duration_ms:.0f} ms) {outcome}"
                )
        return "\n".join(lines)

    # Storage with in-memory fallback

    def _call_primary(self, operation: str, action, default):
        if self._primary is None:
            return default
        try:
            return action(self._primary)
        except sqlite3.Error as e:
            self._mark_degraded(operation, e)
            return default

    def _insert(self, record: RetryTaskRecord) -> None:
        if self._primary is not None:
            try:
                self._primary.insert(record)
                return
            except sqlite3.Error as e:
                self._mark_degraded("insert", e)
        self._fallback.insert(record)

    def _get(self, record_id: str) -> Optional[RetryTaskRecord]:
        record = self._fallback.get(record_id)
        if record is not None:
            return record
        return self._call_primary("get", lambda s: s.get(record_id), None)

    def _due(self, now: datetime, limit: int) -> List[RetryTaskRecord]:
        records = {r.id: r for r in self._call_primary("due", lambda s: s.due(now, limit), [])}
        records.update({r.id: r for r in self._fallback.due(now, limit)})
        ordered = sorted(records.values(), key=lambda r: (r.next_eligible_at, r.created_at))
        return ordered[:limit]

    def _update(self, record: RetryTaskRecord, expected_status: RetryStatus, expected_attempt: int) -> bool:
        if self._fallback.get(record.id) is not None:
            return self._fallback.update(record, expected_status, expected_attempt)
        if self._primary is None:
            return False
        try:
            return self._primary.update(record, expected_status, expected_attempt)
        except sqlite3.Error as e:
            self._mark_degraded("update", e)
            # The caller holds the record lock and read the expected state
            self._fallback.upsert(record)
            return True

    def _append_history(self, entry: ExecutionHistoryEntry) -> None:
        if self._primary_history is not None:
            try:
                self._primary_history.append(entry)
                return
            except sqlite3.Error as e:
                self._mark_degraded("history", e)
        self._fallback_history.append(entry)

    def _mark_degraded(self, operation: str, error: Exception) -> None:
        with self._degraded_lock:
            first = not self._degraded
            self._degraded = True
        log.warning(
            "retry.persistence_degraded",
            operation=operation,
            error=str(error),
            first_failure=first,
        )
