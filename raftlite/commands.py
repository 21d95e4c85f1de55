"""RPC messages exchanged between cluster members, and transport errors."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional

from raftlite.log import Log


@dataclass
class AppendEntriesRequest:
    """Appends entries to a follower's replicated log."""

    term: int = 0
    leader: bytes = b""
    prev_log_entry: int = 0
    prev_log_term: int = 0
    entries: list[Log] = field(default_factory=list)
    leader_commit_index: int = 0


@dataclass
class AppendEntriesResponse:
    """Reply to an AppendEntriesRequest."""

    term: int = 0
    last_log: int = 0
    success: bool = False
    no_retry_backoff: bool = False


@dataclass
class RequestVoteRequest:
    """Asks a peer for its vote in an election."""

    term: int = 0
    candidate: bytes = b""
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteResponse:
    """Reply to a RequestVoteRequest."""

    term: int = 0
    peers: bytes = b""
    granted: bool = False


@dataclass
class InstallSnapshotRequest:
    """Bootstraps a peer's log and state machine from a snapshot."""

    term: int = 0
    leader: bytes = b""
    last_log_index: int = 0
    last_log_term: int = 0
    peers: bytes = b""
    size: int = 0


@dataclass
class InstallSnapshotResponse:
    """Reply to an InstallSnapshotRequest."""

    term: int = 0
    success: bool = False


@dataclass
class RPCResponse:
    """The outcome of an RPC: a response object and an optional error."""

    response: Any = None
    error: Optional[BaseException] = None


@dataclass
class RPC:
    """An incoming command with a channel on which to send the reply."""

    command: Any = None
    reader: Optional[BinaryIO] = None
    resp_chan: "queue.Queue[RPCResponse]" = field(default_factory=queue.Queue)

    def respond(self, response: Any, error: Optional[BaseException]) -> None:
        """Send the reply back to the caller."""
        self.resp_chan.put(RPCResponse(response, error))


class TransportError(Exception):
    """Base class for transport failures."""


class TransportShutdownError(TransportError):
    """Raised when a transport is used after it has been shut down."""

    def __init__(self, message: str = "transport shutdown") -> None:
        super().__init__(message)


class PipelineShutdownError(TransportError):
    """Raised when an append pipeline has been closed."""

    def __init__(self, message: str = "append pipeline closed") -> None:
        super().__init__(message)