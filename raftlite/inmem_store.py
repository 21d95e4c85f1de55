"""An in-memory log and key/value store, meant for tests only."""

from __future__ import annotations

import dataclasses
import threading
from typing import Iterable, Optional

from raftlite.log import Log, LogNotFoundError, LogStore


class InmemStore(LogStore):
    """Keeps log entries and stable values in dictionaries."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._low_index = 0
        self._high_index = 0
        self._logs: dict[int, Log] = {}
        self._kv: dict[bytes, bytes] = {}
        self._kv_int: dict[bytes, int] = {}

    def first_index(self) -> int:
        """Return the first index written, 0 when empty."""
        with self._lock:
            return self._low_index

    def last_index(self) -> int:
        """Return the last index written, 0 when empty."""
        with self._lock:
            return self._high_index

    def get_log(self, index: int) -> Log:
        """Return a copy of the entry at ``index``."""
        with self._lock:
            try:
                stored = self._logs[index]
            except KeyError:
                raise LogNotFoundError() from None
            return dataclasses.replace(stored)

    def store_log(self, log: Log) -> None:
        """Store a single entry."""
        self.store_logs([log])

    def store_logs(self, logs: Iterable[Log]) -> None:
        """Store several entries."""
        with self._lock:
            for log in logs:
                self._logs[log.index] = log
                if self._low_index == 0:
                    self._low_index = log.index
                if log.index > self._high_index:
                    self._high_index = log.index

    def delete_range(self, min_index: int, max_index: int) -> None:
        """Delete entries from ``min_index`` to ``max_index`` inclusive."""
        with self._lock:
            for index in range(min_index, max_index + 1):
                self._logs.pop(index, None)
            self._low_index = max_index + 1

    def set(self, key: bytes, val: bytes) -> None:
        """Store ``val`` under ``key``."""
        with self._lock:
            self._kv[bytes(key)] = val

    def get(self, key: bytes) -> Optional[bytes]:
        """Return the value under ``key``, or None if there is none."""
        with self._lock:
            return self._kv.get(bytes(key))

    def set_uint64(self, key: bytes, val: int) -> None:
        """Store an integer under ``key``."""
        with self._lock:
            self._kv_int[bytes(key)] = val

    def get_uint64(self, key: bytes) -> int:
        """Return the integer under ``key``, or 0 if there is none."""
        with self._lock:
            return self._kv_int.get(bytes(key), 0)


__all__ = ["InmemStore"]