"""Tracking of log entries that are replicated but not yet committed."""

from __future__ import annotations

import queue
import threading
from typing import Iterable, Optional

from raftlite.future import LogFuture


def _notify(channel: "queue.Queue[None]") -> None:
    """Signal ``channel`` without blocking; a pending signal is enough."""
    try:
        channel.put_nowait(None)
    except queue.Full:
        pass


class MajorityQuorum:
    """Commit rule that needs a simple majority of the cluster."""

    def __init__(self, cluster_size: int) -> None:
        self.count = 0
        self.votes_needed = cluster_size // 2 + 1

    def commit(self) -> bool:
        """Count one more vote; return True once the majority is reached."""
        self.count += 1
        return self.count >= self.votes_needed

    def is_committed(self) -> bool:
        """Return True if the majority has been reached."""
        return self.count >= self.votes_needed


class Inflight:
    """Operations still in flight, committed strictly in index order.

    ``commit_ch`` is signalled without blocking whenever operations become
    committed, and once more when the tracker is cancelled.
    """

    def __init__(self, commit_ch: "queue.Queue[None]") -> None:
        self._lock = threading.Lock()
        self._committed: list[LogFuture] = []
        self._commit_ch = commit_ch
        self._min_commit = 0
        self._max_commit = 0
        self._operations: dict[int, LogFuture] = {}
        self._stopped = threading.Event()

    def start(self, future: LogFuture) -> None:
        """Mark ``future`` as in flight and count the leader's own vote."""
        with self._lock:
            self._start(future)

    def start_all(self, futures: Iterable[LogFuture]) -> None:
        """Mark several futures as in flight."""
        with self._lock:
            for future in futures:
                self._start(future)

    def _start(self, future: LogFuture) -> None:
        index = future.log.index
        self._operations[index] = future
        if index > self._max_commit:
            self._max_commit = index
        if self._min_commit == 0:
            self._min_commit = index
        self._commit(index)

    def cancel(self, err: Optional[BaseException]) -> None:
        """Fail every tracked operation with ``err`` and reset."""
        self._stopped.set()
        with self._lock:
            for op in self._operations.values():
                op.respond(err)
            for op in self._committed:
                op.respond(err)
            self._operations = {}
            self._committed = []
            _notify(self._commit_ch)
            self._min_commit = 0
            self._max_commit = 0

    def committed(self) -> list[LogFuture]:
        """Return the committed operations in order and forget them."""
        with self._lock:
            result, self._committed = self._committed, []
        return result

    def commit(self, index: int) -> None:
        """Record that a follower has stored the entry at ``index``."""
        with self._lock:
            self._commit(index)

    def commit_range(self, min_index: int, max_index: int) -> None:
        """Commit every tracked index from ``min_index`` to ``max_index``."""
        with self._lock:
            for index in range(max(self._min_commit, min_index), max_index + 1):
                self._commit(index)

    def _commit(self, index: int) -> None:
        op = self._operations.get(index)
        if op is None:
            # Not tracked: it may already be committed.
            return
        if not op.policy.commit():
            return
        # Entries must be handed over in order, so a later entry that reached
        # its quorum first waits for the minimum one.
        if index != self._min_commit:
            return

        while True:
            self._committed.append(op)
            del self._operations[index]
            if index == self._max_commit:
                self._min_commit = 0
                self._max_commit = 0
            else:
                self._min_commit += 1

            if self._min_commit == 0:
                break
            op = self._operations[self._min_commit]
            if not op.policy.is_committed():
                break
            index = self._min_commit

        _notify(self._commit_ch)


__all__ = ["MajorityQuorum", "Inflight"]