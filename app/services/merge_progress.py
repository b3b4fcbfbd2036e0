"""Progress tracking for running merges, polled by clients.

Entries live in a process-wide dict guarded by a lock and are evicted
lazily on every access: entries past their scheduled expiry (completed
runs, *ttl_seconds* after completion) and running entries that stopped
reporting for *stale_seconds*.  A deployment with several
API instances needs a shared store with the same interface instead.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any


@dataclass
class MergeProgress:
    total: int = 0
    current: int = 0
    current_operation: str = ""
    errors: list[str] = field(default_factory=list)
    completed: bool = False
    success: bool | None = None
    result: dict[str, Any] | None = None
    updated_at: float = 0.0
    expires_at: float | None = None

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.current / self.total * 100)


class MergeProgressStore:
    """Thread-safe ``merge_id -> MergeProgress`` map with TTL eviction."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        stale_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, MergeProgress] = {}

    def _evict_expired(self, now: float) -> None:
        expired = [
            merge_id
            for merge_id, entry in self._entries.items()
            if (entry.expires_at is not None and now >= entry.expires_at)
            or (entry.expires_at is None and now - entry.updated_at > self.stale_seconds)
        ]
        for merge_id in expired:
            del self._entries[merge_id]

    def initialize(self, merge_id: str, total: int, operation: str = "Initializing merge...") -> None:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            self._entries[merge_id] = MergeProgress(
                total=total, current_operation=operation, updated_at=now
            )

    def update(
        self,
        merge_id: str,
        current: int,
        total: int,
        operation: str,
        error: str | None = None,
    ) -> None:
        """Record progress.

        ``current`` never moves backwards and stays below ``total`` until
        :meth:`complete` is called, so a poller never sees 100% before the
        run has finished.
        """
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            entry = self._entries.setdefault(merge_id, MergeProgress(updated_at=now))
            entry.total = total
            entry.current = max(entry.current, min(current, max(total - 1, 0)))
            entry.current_operation = operation
            entry.updated_at = now
            if error:
                entry.errors.append(error)

    def complete(
        self,
        merge_id: str,
        success: bool,
        result: dict[str, Any] | None = None,
        operation: str | None = None,
    ) -> None:
        """Mark a run finished; the entry expires *ttl_seconds* from now."""
        now = self._clock()
        with self._lock:
            entry = self._entries.setdefault(merge_id, MergeProgress(updated_at=now))
            entry.completed = True
            entry.success = success
            entry.result = result
            entry.updated_at = now
            if success:
                entry.current = entry.total
            if operation is not None:
                entry.current_operation = operation
            entry.expires_at = now + self.ttl_seconds

    def schedule_expiry(self, merge_id: str, delay_seconds: float | None = None) -> bool:
        """Expire an entry *delay_seconds* from now (default *ttl_seconds*).

        Returns ``False`` if the entry is unknown.
        """
        now = self._clock()
        delay = self.ttl_seconds if delay_seconds is None else delay_seconds
        with self._lock:
            entry = self._entries.get(merge_id)
            if entry is None:
                return False
            entry.expires_at = now + delay
            return True

    def get(self, merge_id: str) -> MergeProgress | None:
        """Return a snapshot of the entry, or ``None`` if unknown/expired."""
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            entry = self._entries.get(merge_id)
            if entry is None:
                return None
            return replace(entry, errors=list(entry.errors))
