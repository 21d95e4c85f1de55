"""A ring-buffer cache of recent entries in front of any LogStore."""

from __future__ import annotations

import dataclasses
import threading
from typing import Iterable, Optional

from raftlite.log import Log, LogStore


class LogCache(LogStore):
    """Caches recently written entries to avoid reads from the backend."""

    def __init__(self, capacity: int, store: LogStore) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._store = store
        self._cache: list[Optional[Log]] = [None] * capacity
        self._lock = threading.Lock()

    def get_log(self, index: int) -> Log:
        """Return the entry at ``index`` from the cache or the backend."""
        with self._lock:
            cached = self._cache[index % len(self._cache)]
        if cached is not None and cached.index == index:
            return dataclasses.replace(cached)
        return self._store.get_log(index)

    def store_log(self, log: Log) -> None:
        """Store a single entry."""
        self.store_logs([log])

    def store_logs(self, logs: Iterable[Log]) -> None:
        """Cache the entries and write them through to the backend."""
        logs = list(logs)
        with self._lock:
            for log in logs:
                self._cache[log.index % len(self._cache)] = log
        self._store.store_logs(logs)

    def first_index(self) -> int:
        """Return the backend's first index."""
        return self._store.first_index()

    def last_index(self) -> int:
        """Return the backend's last index."""
        return self._store.last_index()

    def delete_range(self, min_index: int, max_index: int) -> None:
        """Invalidate the cache and delete the range in the backend."""
        with self._lock:
            self._cache = [None] * len(self._cache)
        self._store.delete_range(min_index, max_index)


__all__ = ["LogCache"]