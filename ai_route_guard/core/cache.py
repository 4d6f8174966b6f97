"""
Response cache.

Opt-in LRU cache of successful generations. A hit saves the cost of the
call that would otherwise have been made; the router records that saving
in the ledger as avoided-via-cache spend.
"""

import hashlib
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

from .scheduling import Clock, SystemClock


@dataclass(frozen=True)
class CachedResponse:
    content: str
    backend_id: str
    cost: float
    stored_at: datetime


def cache_key(
    prompt: str,
    task_type: Optional[str] = None,
    context: Sequence[str] = (),
    options: Optional[Dict[str, Any]] = None,
) -> str:
    """Stable digest of everything that affects the generated content."""
    material = json.dumps(
        {
            "prompt": prompt,
            "task_type": task_type,
            "context": list(context),
            "options": options or {},
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class ResponseCache:
    """Thread-safe LRU cache with a time-to-live."""

    def __init__(self, ttl_seconds: float = 3600.0, max_entries: int = 1000, clock: Optional[Clock] = None):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        self._entries: "OrderedDict[str, CachedResponse]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[CachedResponse]:
        now = self._clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry.stored_at >= self._ttl:
                if entry is not None:
                    del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def put(self, key: str, content: str, backend_id: str, cost: float) -> CachedResponse:
        entry = CachedResponse(content, backend_id, cost, self._clock.now())
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total * 100 if total else 0.0,
            }
