"""Replicated log entries and the interface for storing them."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from typing import Iterable


class LogType(enum.IntEnum):
    """Kinds of entries that may appear in the replicated log."""

    COMMAND = 0
    """Applied to the user state machine."""
    NOOP = 1
    """Used to assert leadership."""
    ADD_PEER = 2
    """Adds a new peer to the cluster."""
    REMOVE_PEER = 3
    """Removes an existing peer from the cluster."""
    BARRIER = 4
    """Returns only once every preceding entry has been applied."""


@dataclass
class Log:
    """A single entry of the replicated log."""

    index: int = 0
    term: int = 0
    type: LogType = LogType.COMMAND
    data: bytes = b""
    # Local bookkeeping used to build ``data``; never transmitted or compared.
    peer: str = field(default="", compare=False, repr=False)


class LogNotFoundError(LookupError):
    """Raised when a requested log entry does not exist."""

    def __init__(self, message: str = "log not found") -> None:
        super().__init__(message)


class LogStore(abc.ABC):
    """Durable storage and retrieval of log entries."""

    @abc.abstractmethod
    def first_index(self) -> int:
        """Return the first index written, 0 when there are no entries."""

    @abc.abstractmethod
    def last_index(self) -> int:
        """Return the last index written, 0 when there are no entries."""

    @abc.abstractmethod
    def get_log(self, index: int) -> Log:
        """Return the entry at ``index``; raise LogNotFoundError if absent."""

    def store_log(self, log: Log) -> None:
        """Store a single entry."""
        self.store_logs([log])

    @abc.abstractmethod
    def store_logs(self, logs: Iterable[Log]) -> None:
        """Store several entries."""

    @abc.abstractmethod
    def delete_range(self, min_index: int, max_index: int) -> None:
        """Delete the entries from ``min_index`` to ``max_index`` inclusive."""