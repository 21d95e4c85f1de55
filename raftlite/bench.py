"""Shared benchmarks for any log store or stable store.

Each function runs the operation ``n`` times and returns the elapsed
seconds spent in the measured operations, excluding setup.
"""

from __future__ import annotations

import time
from typing import Optional, Protocol

from raftlite.log import Log, LogStore


class _StableStore(Protocol):
    def set(self, key: bytes, val: bytes) -> None: ...

    def get(self, key: bytes) -> Optional[bytes]: ...

    def set_uint64(self, key: bytes, val: int) -> None: ...


def _fake_logs() -> list[Log]:
    return [Log(index=i, data=b"data") for i in range(1, 10)]


def _key(n: int) -> bytes:
    return bytes([n % 256])


def bench_first_index(store: LogStore, n: int) -> float:
    """Time ``first_index`` on a store holding a few entries."""
    store.store_logs(_fake_logs())
    started = time.perf_counter()
    for _ in range(n):
        store.first_index()
    return time.perf_counter() - started


def bench_last_index(store: LogStore, n: int) -> float:
    """Time ``last_index`` on a store holding a few entries."""
    store.store_logs(_fake_logs())
    started = time.perf_counter()
    for _ in range(n):
        store.last_index()
    return time.perf_counter() - started


def bench_get_log(store: LogStore, n: int) -> float:
    """Time fetching the same entry repeatedly."""
    store.store_logs(_fake_logs())
    started = time.perf_counter()
    for _ in range(n):
        store.get_log(5)
    return time.perf_counter() - started


def bench_store_log(store: LogStore, n: int) -> float:
    """Time storing entries one at a time."""
    started = time.perf_counter()
    for i in range(n):
        store.store_log(Log(index=i, data=b"data"))
    return time.perf_counter() - started


def bench_store_logs(store: LogStore, n: int) -> float:
    """Time storing entries three at a time."""
    elapsed = 0.0
    for i in range(n):
        offset = 3 * (i + 1)
        logs = [Log(index=index, data=b"data") for index in range(offset - 2, offset + 1)]
        started = time.perf_counter()
        store.store_logs(logs)
        elapsed += time.perf_counter() - started
    return elapsed


def bench_delete_range(store: LogStore, n: int) -> float:
    """Time deleting ranges that each hold three of ten possible entries."""
    logs = [
        Log(index=index, data=b"data")
        for i in range(n)
        for index in range(10 * i, 10 * i + 3)
    ]
    store.store_logs(logs)
    started = time.perf_counter()
    for i in range(n):
        offset = 10 * i
        store.delete_range(offset, offset + 9)
    return time.perf_counter() - started


def bench_set(store: _StableStore, n: int) -> float:
    """Time setting one-byte keys."""
    started = time.perf_counter()
    for i in range(n):
        store.set(_key(i), b"val")
    return time.perf_counter() - started


def bench_get(store: _StableStore, n: int) -> float:
    """Time reading the same key repeatedly."""
    for i in range(1, 10):
        store.set(_key(i), b"val")
    started = time.perf_counter()
    for _ in range(n):
        store.get(b"\x05")
    return time.perf_counter() - started


def bench_set_uint64(store: _StableStore, n: int) -> float:
    """Time setting integer values."""
    started = time.perf_counter()
    for i in range(n):
        store.set_uint64(_key(i), i)
    return time.perf_counter() - started


def bench_get_uint64(store: _StableStore, n: int) -> float:
    """Time reading a key after storing integer values."""
    for i in range(10):
        store.set_uint64(_key(i), i)
    started = time.perf_counter()
    for _ in range(n):
        store.get(b"\x05")
    return time.perf_counter() - started


__all__ = [
    "bench_first_index",
    "bench_last_index",
    "bench_get_log",
    "bench_store_log",
    "bench_store_logs",
    "bench_delete_range",
    "bench_set",
    "bench_get",
    "bench_set_uint64",
    "bench_get_uint64",
]