"""Snapshot storage and the state-machine interfaces that produce snapshots."""

from __future__ import annotations

import abc
import base64
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional

from raftlite.log import Log

_TEST_PATH = "permTest"
_SNAP_PATH = "snapshots"
_META_FILE_PATH = "meta.json"
_STATE_FILE_PATH = "state.bin"
_TMP_SUFFIX = ".tmp"

_CRC64_ECMA = 0xC96C5795D7870F42
_MASK64 = 0xFFFFFFFFFFFFFFFF


def _make_crc64_table(poly: int) -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC64_TABLE = _make_crc64_table(_CRC64_ECMA)


class _CRC64:
    """Running CRC-64 (ECMA polynomial, reflected) checksum."""

    def __init__(self) -> None:
        self._crc = 0

    def update(self, data: bytes) -> None:
        crc = ~self._crc & _MASK64
        table = _CRC64_TABLE
        for byte in data:
            crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
        self._crc = ~crc & _MASK64

    def digest(self) -> bytes:
        return self._crc.to_bytes(8, "big")


class SnapshotError(Exception):
    """Raised when a snapshot cannot be created, listed or opened."""


@dataclass
class SnapshotMeta:
    """Describes a stored snapshot."""

    id: str = ""
    index: int = 0
    term: int = 0
    peers: bytes = b""
    size: int = 0


class SnapshotSink(abc.ABC):
    """Destination for snapshot data; finish with ``close`` or ``cancel``.

    Used as a context manager, the sink is closed on success and cancelled
    when the block raises.
    """

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        """Append ``data`` and return the number of bytes written."""

    @abc.abstractmethod
    def close(self) -> None:
        """Finish the snapshot successfully."""

    @abc.abstractmethod
    def id(self) -> str:
        """Return the identifier of the snapshot."""

    @abc.abstractmethod
    def cancel(self) -> None:
        """Abandon the snapshot."""

    def __enter__(self) -> "SnapshotSink":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
        else:
            self.cancel()


class FSMSnapshot(abc.ABC):
    """A point-in-time view of a state machine, ready to be persisted."""

    @abc.abstractmethod
    def persist(self, sink: SnapshotSink) -> None:
        """Write all state to ``sink`` and close it, or cancel it on error."""

    @abc.abstractmethod
    def release(self) -> None:
        """Called once the snapshot is no longer needed."""


class FSM(abc.ABC):
    """A state machine fed by the replicated log."""

    @abc.abstractmethod
    def apply(self, log: Log) -> Any:
        """Apply a committed entry and return a result for the caller."""

    @abc.abstractmethod
    def snapshot(self) -> FSMSnapshot:
        """Return a snapshot of the current state."""

    @abc.abstractmethod
    def restore(self, reader: BinaryIO) -> None:
        """Replace all state with the snapshot read from ``reader``."""


class DiscardSnapshotSink(SnapshotSink):
    """A sink that accepts and drops everything."""

    def write(self, data: bytes) -> int:
        """Discard ``data`` and report it as written."""
        return len(data)

    def close(self) -> None:
        """Do nothing."""

    def id(self) -> str:
        """Return the fixed identifier ``discard``."""
        return "discard"

    def cancel(self) -> None:
        """Do nothing."""


class DiscardSnapshotStore:
    """A snapshot store that keeps nothing; for testing only."""

    def create(self, index: int, term: int, peers: bytes) -> DiscardSnapshotSink:
        """Return a sink that discards what is written."""
        return DiscardSnapshotSink()

    def list(self) -> list[SnapshotMeta]:
        """Return no snapshots."""
        return []

    def open(self, snapshot_id: str) -> tuple[SnapshotMeta, BinaryIO]:
        """Always fail: nothing is ever stored."""
        raise SnapshotError("open is not supported")


def _b64(data: Optional[bytes]) -> Optional[str]:
    return None if data is None else base64.b64encode(data).decode("ascii")


def _unb64(text: Optional[str]) -> bytes:
    return b"" if not text else base64.b64decode(text)


@dataclass
class _FileMeta:
    meta: SnapshotMeta
    crc: Optional[bytes] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "ID": self.meta.id,
                "Index": self.meta.index,
                "Term": self.meta.term,
                "Peers": _b64(self.meta.peers),
                "Size": self.meta.size,
                "CRC": _b64(self.crc),
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "_FileMeta":
        raw = json.loads(text)
        if not isinstance(raw, dict):
            raise ValueError("snapshot metadata is not an object")
        meta = SnapshotMeta(
            id=str(raw.get("ID", "")),
            index=int(raw.get("Index", 0)),
            term=int(raw.get("Term", 0)),
            peers=_unb64(raw.get("Peers")),
            size=int(raw.get("Size", 0)),
        )
        crc = raw.get("CRC")
        return cls(meta, None if crc is None else _unb64(crc))


class FileSnapshotSink(SnapshotSink):
    """Writes a snapshot into a temporary directory on local disk."""

    def __init__(
        self, store: "FileSnapshotStore", directory: str, meta: SnapshotMeta
    ) -> None:
        self._store = store
        self._logger = store._logger
        self._dir = directory
        self._meta = _FileMeta(meta)
        self._state_file: Optional[BinaryIO] = None
        self._hash = _CRC64()
        self._closed = False

    def _open_state(self) -> None:
        self._state_file = open(os.path.join(self._dir, _STATE_FILE_PATH), "wb")

    def id(self) -> str:
        """Return the snapshot identifier, usable with ``open`` once closed."""
        return self._meta.meta.id

    def write(self, data: bytes) -> int:
        """Append ``data`` to the state file."""
        assert self._state_file is not None
        self._state_file.write(data)
        self._hash.update(data)
        return len(data)

    def close(self) -> None:
        """Finalize the snapshot, move it into place and reap old ones."""
        if self._closed:
            return
        self._closed = True
        try:
            self._finalize()
        except OSError as err:
            self._logger.error("snapshot: Failed to finalize snapshot: %s", err)
            raise
        try:
            self._write_meta()
        except OSError as err:
            self._logger.error("snapshot: Failed to write metadata: %s", err)
            raise
        new_path = self._dir[: -len(_TMP_SUFFIX)] if self._dir.endswith(_TMP_SUFFIX) else self._dir
        try:
            os.rename(self._dir, new_path)
        except OSError as err:
            self._logger.error("snapshot: Failed to move snapshot into place: %s", err)
            raise
        self._store.reap_snapshots()

    def cancel(self) -> None:
        """Abandon the snapshot and remove everything written so far."""
        if self._closed:
            return
        self._closed = True
        try:
            self._finalize()
        except OSError as err:
            self._logger.error("snapshot: Failed to finalize snapshot: %s", err)
            raise
        shutil.rmtree(self._dir, ignore_errors=False)

    def _finalize(self) -> None:
        state = self._state_file
        assert state is not None
        try:
            state.flush()
            size = os.fstat(state.fileno()).st_size
        finally:
            state.close()
        self._meta.meta.size = size
        self._meta.crc = self._hash.digest()

    def _write_meta(self) -> None:
        path = os.path.join(self._dir, _META_FILE_PATH)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(self._meta.to_json())
            fh.write("\n")


class FileSnapshotStore:
    """Keeps snapshots in a directory on local disk, retaining the newest ones."""

    def __init__(
        self, base: str, retain: int, logger: Optional[logging.Logger] = None
    ) -> None:
        if retain < 1:
            raise SnapshotError("must retain at least one snapshot")
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._retain = retain
        self._path = os.path.join(base, _SNAP_PATH)
        try:
            os.makedirs(self._path, mode=0o755, exist_ok=True)
        except OSError as err:
            raise SnapshotError(f"snapshot path not accessible: {err}") from err
        try:
            self._test_permissions()
        except OSError as err:
            raise SnapshotError(f"permissions test failed: {err}") from err

    @property
    def path(self) -> str:
        """Directory holding the snapshots."""
        return self._path

    def _test_permissions(self) -> None:
        path = os.path.join(self._path, _TEST_PATH)
        with open(path, "wb"):
            pass
        os.remove(path)

    def create(self, index: int, term: int, peers: bytes) -> FileSnapshotSink:
        """Start a new snapshot and return the sink to write it to."""
        name = f"{term}-{index}-{time.time_ns() // 1_000_000}"
        path = os.path.join(self._path, name + _TMP_SUFFIX)
        self._logger.info("snapshot: Creating new snapshot at %s", path)
        try:
            os.makedirs(path, mode=0o755, exist_ok=True)
        except OSError as err:
            self._logger.error("snapshot: Failed to make snapshot directory: %s", err)
            raise
        sink = FileSnapshotSink(
            self, path, SnapshotMeta(id=name, index=index, term=term, peers=bytes(peers))
        )
        try:
            sink._write_meta()
        except OSError as err:
            self._logger.error("snapshot: Failed to write metadata: %s", err)
            raise
        try:
            sink._open_state()
        except OSError as err:
            self._logger.error("snapshot: Failed to create state file: %s", err)
            raise
        return sink

    def list(self) -> list[SnapshotMeta]:
        """Return the retained snapshots, newest first."""
        return [item.meta for item in self._get_snapshots()[: self._retain]]

    def _get_snapshots(self) -> list[_FileMeta]:
        try:
            entries = sorted(os.scandir(self._path), key=lambda entry: entry.name)
        except OSError as err:
            self._logger.error("snapshot: Failed to scan snapshot dir: %s", err)
            raise
        found: list[_FileMeta] = []
        for entry in entries:
            if not entry.is_dir():
                continue
            if entry.name.endswith(_TMP_SUFFIX):
                self._logger.warning("snapshot: Found temporary snapshot: %s", entry.name)
                continue
            try:
                found.append(self._read_meta(entry.name))
            except (OSError, ValueError) as err:
                self._logger.warning(
                    "snapshot: Failed to read metadata for %s: %s", entry.name, err
                )
        found.sort(key=lambda m: (m.meta.term, m.meta.index, m.meta.id), reverse=True)
        return found

    def _read_meta(self, name: str) -> _FileMeta:
        path = os.path.join(self._path, name, _META_FILE_PATH)
        with open(path, encoding="utf-8") as fh:
            return _FileMeta.from_json(fh.read())

    def open(self, snapshot_id: str) -> tuple[SnapshotMeta, BinaryIO]:
        """Verify the snapshot's checksum and return its metadata and a reader."""
        try:
            meta = self._read_meta(snapshot_id)
        except (OSError, ValueError) as err:
            self._logger.error(
                "snapshot: Failed to get meta data to open snapshot: %s", err
            )
            raise
        state_path = os.path.join(self._path, snapshot_id, _STATE_FILE_PATH)
        try:
            fh = open(state_path, "rb")
        except OSError as err:
            self._logger.error("snapshot: Failed to open state file: %s", err)
            raise
        try:
            digest = _CRC64()
            for chunk in iter(lambda: fh.read(65536), b""):
                digest.update(chunk)
            computed = digest.digest()
            if meta.crc != computed:
                self._logger.error(
                    "snapshot: CRC checksum failed (stored: %r computed: %r)",
                    meta.crc,
                    computed,
                )
                raise SnapshotError("CRC mismatch")
            fh.seek(0)
        except BaseException:
            fh.close()
            raise
        return meta.meta, fh

    def reap_snapshots(self) -> None:
        """Delete every snapshot beyond the retain count."""
        for item in self._get_snapshots()[self._retain :]:
            path = os.path.join(self._path, item.meta.id)
            self._logger.info("snapshot: reaping snapshot %s", path)
            try:
                shutil.rmtree(path)
            except OSError as err:
                self._logger.error("snapshot: Failed to reap snapshot %s: %s", path, err)
                raise


__all__ = [
    "SnapshotMeta",
    "SnapshotError",
    "SnapshotSink",
    "FSM",
    "FSMSnapshot",
    "DiscardSnapshotStore",
    "DiscardSnapshotSink",
    "FileSnapshotStore",
    "FileSnapshotSink",
]