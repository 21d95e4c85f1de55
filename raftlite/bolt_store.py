"""A durable log and key/value store kept in a single database file."""

from __future__ import annotations

import os
import sqlite3
import struct
import threading
from typing import Any, Iterable

import msgpack

from raftlite.log import Log, LogNotFoundError, LogStore, LogType

# Permissions used only when the database file has to be created.
_DB_FILE_MODE = 0o600

_DB_LOGS = "logs"
_DB_CONF = "conf"

_UINT64 = struct.Struct(">Q")


class KeyNotFoundError(LookupError):
    """Raised when a key does not exist in the stable store."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


def uint64_to_bytes(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as 8 big-endian bytes."""
    return _UINT64.pack(value)


def bytes_to_uint64(data: bytes) -> int:
    """Decode 8 big-endian bytes into an unsigned 64-bit integer."""
    return _UINT64.unpack(bytes(data[:8]))[0]


def encode_log(log: Log) -> bytes:
    """Serialise a log entry with MessagePack."""
    return msgpack.packb(
        {
            "Index": log.index,
            "Term": log.term,
            "Type": int(log.type),
            "Data": bytes(log.data),
        },
        use_bin_type=True,
    )


def decode_log(data: bytes) -> Log:
    """Reverse ``encode_log``."""
    raw: Any = msgpack.unpackb(data, raw=False)
    if not isinstance(raw, dict):
        raise ValueError("encoded log entry is not a map")
    payload = raw.get("Data")
    if payload is None:
        payload = b""
    elif isinstance(payload, str):
        payload = payload.encode("utf-8")
    return Log(
        index=int(raw.get("Index", 0)),
        term=int(raw.get("Term", 0)),
        type=LogType(int(raw.get("Type", 0))),
        data=bytes(payload),
    )


class BoltStore(LogStore):
    """Stores log entries and stable key/value pairs in one database file.

    Usable both as a log store and as a stable store.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        if not os.path.exists(path):
            fd = os.open(path, os.O_CREAT | os.O_WRONLY, _DB_FILE_MODE)
            os.close(fd)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        try:
            self._initialize()
        except Exception:
            self._conn.close()
            raise

    def _initialize(self) -> None:
        with self._lock, self._conn:
            for table in (_DB_LOGS, _DB_CONF):
                self._conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {table} "
                    "(key BLOB PRIMARY KEY, value BLOB NOT NULL)"
                )

    def __enter__(self) -> "BoltStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _edge_index(self, order: str) -> int:
        with self._lock:
            row = self._conn.execute(
                f"SELECT key FROM {_DB_LOGS} ORDER BY key {order} LIMIT 1"
            ).fetchone()
        return 0 if row is None else bytes_to_uint64(row[0])

    def first_index(self) -> int:
        """Return the first known index, 0 when the log is empty."""
        return self._edge_index("ASC")

    def last_index(self) -> int:
        """Return the last known index, 0 when the log is empty."""
        return self._edge_index("DESC")

    def get_log(self, index: int) -> Log:
        """Return the entry at ``index``; raise LogNotFoundError if absent."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT value FROM {_DB_LOGS} WHERE key = ?",
                (uint64_to_bytes(index),),
            ).fetchone()
        if row is None:
            raise LogNotFoundError()
        return decode_log(bytes(row[0]))

    def store_log(self, log: Log) -> None:
        """Store a single entry."""
        self.store_logs([log])

    def store_logs(self, logs: Iterable[Log]) -> None:
        """Store several entries in one transaction."""
        rows = [(uint64_to_bytes(log.index), encode_log(log)) for log in logs]
        with self._lock, self._conn:
            self._conn.executemany(
                f"INSERT OR REPLACE INTO {_DB_LOGS} (key, value) VALUES (?, ?)",
                rows,
            )

    def delete_range(self, min_index: int, max_index: int) -> None:
        """Delete entries from ``min_index`` to ``max_index`` inclusive."""
        with self._lock, self._conn:
            self._conn.execute(
                f"DELETE FROM {_DB_LOGS} WHERE key >= ? AND key <= ?",
                (uint64_to_bytes(min_index), uint64_to_bytes(max_index)),
            )

    def set(self, key: bytes, val: bytes) -> None:
        """Store ``val`` under ``key`` outside the log."""
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT OR REPLACE INTO {_DB_CONF} (key, value) VALUES (?, ?)",
                (bytes(key), bytes(val)),
            )

    def get(self, key: bytes) -> bytes:
        """Return the value under ``key``; raise KeyNotFoundError if absent."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT value FROM {_DB_CONF} WHERE key = ?", (bytes(key),)
            ).fetchone()
        if row is None:
            raise KeyNotFoundError()
        return bytes(row[0])

    def set_uint64(self, key: bytes, val: int) -> None:
        """Store an unsigned 64-bit integer under ``key``."""
        self.set(key, uint64_to_bytes(val))

    def get_uint64(self, key: bytes) -> int:
        """Return the integer under ``key``; raise KeyNotFoundError if absent."""
        return bytes_to_uint64(self.get(key))


__all__ = [
    "KeyNotFoundError",
    "BoltStore",
    "encode_log",
    "decode_log",
    "uint64_to_bytes",
    "bytes_to_uint64",
]