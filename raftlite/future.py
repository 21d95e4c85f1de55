"""Futures representing results that arrive later."""

from __future__ import annotations

import queue
import threading
import time
from typing import Any, Optional

from raftlite.commands import AppendEntriesRequest, AppendEntriesResponse
from raftlite.log import Log


class ErrorFuture:
    """A future that is already resolved with a fixed error."""

    def __init__(self, err: Optional[BaseException]) -> None:
        self._err = err

    def error(self) -> Optional[BaseException]:
        """Return the stored error."""
        return self._err

    def response(self) -> Any:
        """Return None: no response is ever available."""
        return None

    def index(self) -> int:
        """Return 0: no entry was applied."""
        return 0


class DeferredFuture:
    """A future whose error status is supplied later by ``respond``."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._err: Optional[BaseException] = None

    def error(self) -> Optional[BaseException]:
        """Block until resolved and return the error, or None on success."""
        self._done.wait()
        return self._err

    def respond(self, err: Optional[BaseException]) -> None:
        """Resolve the future; later calls are ignored."""
        with self._lock:
            if self._done.is_set():
                return
            self._err = err
            self._done.set()


class LogFuture(DeferredFuture):
    """Tracks a log entry until it is committed and applied."""

    def __init__(self, log: Optional[Log] = None, policy: Any = None) -> None:
        super().__init__()
        self.log = log if log is not None else Log()
        self.policy = policy
        self.fsm_response: Any = None
        self.dispatch: Optional[float] = None

    def response(self) -> Any:
        """Return what the state machine returned when applying the entry."""
        return self.fsm_response

    def index(self) -> int:
        """Return the index of the entry."""
        return self.log.index


class PeerFuture(DeferredFuture):
    """Waits on a change of the peer set."""

    def __init__(self, peers: Optional[list[str]] = None) -> None:
        super().__init__()
        self.peers = list(peers) if peers is not None else []


class SnapshotFuture(DeferredFuture):
    """Waits for a snapshot to complete."""


class RestoreFuture(DeferredFuture):
    """Asks the state machine to restore the snapshot with the given id."""

    def __init__(self, snapshot_id: str = "") -> None:
        super().__init__()
        self.id = snapshot_id


class VerifyFuture(DeferredFuture):
    """Collects votes confirming the node is still the leader."""

    def __init__(
        self,
        notify_ch: Optional["queue.Queue[VerifyFuture]"] = None,
        quorum_size: int = 0,
    ) -> None:
        super().__init__()
        self.notify_ch = notify_ch
        self.quorum_size = quorum_size
        self.votes = 0
        self._vote_lock = threading.Lock()

    def vote(self, leader: bool) -> None:
        """Record a vote; notify once a quorum agrees or any peer disagrees."""
        with self._vote_lock:
            if self.notify_ch is None:
                return
            if leader:
                self.votes += 1
                if self.votes < self.quorum_size:
                    return
            self.notify_ch.put(self)
            self.notify_ch = None


class AppendFuture(DeferredFuture):
    """Waits on a pipelined AppendEntries RPC."""

    def __init__(
        self,
        args: AppendEntriesRequest,
        resp: Optional[AppendEntriesResponse] = None,
        start: Optional[float] = None,
    ) -> None:
        super().__init__()
        self.args = args
        self.resp = resp if resp is not None else AppendEntriesResponse()
        self.started_at = start if start is not None else time.time()

    def start(self) -> float:
        """Return the time the request was sent."""
        return self.started_at

    def request(self) -> AppendEntriesRequest:
        """Return the request that was sent."""
        return self.args

    def response(self) -> AppendEntriesResponse:
        """Return the response, valid once ``error`` has returned."""
        return self.resp