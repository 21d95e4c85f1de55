"""Storage of the cluster's peer set."""

from __future__ import annotations

import json
import os
import threading
from typing import Iterable, Optional, Protocol

_JSON_PEER_PATH = "peers.json"


class _PeerCodec(Protocol):
    def encode_peer(self, peer: str) -> bytes: ...

    def decode_peer(self, buf: bytes) -> str: ...


class StaticPeers:
    """A peer set held in memory."""

    def __init__(self, peers: Optional[Iterable[str]] = None) -> None:
        self._lock = threading.Lock()
        self._peers = list(peers) if peers is not None else []

    def peers(self) -> list[str]:
        """Return the known peers."""
        with self._lock:
            return list(self._peers)

    def set_peers(self, peers: Iterable[str]) -> None:
        """Replace the known peers."""
        with self._lock:
            self._peers = list(peers)


class JSONPeers:
    """A peer set persisted as a JSON file that operators may edit."""

    def __init__(self, base: str, trans: _PeerCodec) -> None:
        self._lock = threading.Lock()
        self.path = os.path.join(base, _JSON_PEER_PATH)
        self._trans = trans

    def peers(self) -> list[str]:
        """Read and return the peers stored on disk; empty if none."""
        with self._lock:
            try:
                with open(self.path, "rb") as fh:
                    buf = fh.read()
            except FileNotFoundError:
                return []
            if not buf:
                return []
            peer_set = json.loads(buf)
            if peer_set is None:
                return []
            if not isinstance(peer_set, list):
                raise ValueError("peer file does not hold a list")
            return [self._trans.decode_peer(str(p).encode()) for p in peer_set]

    def set_peers(self, peers: Iterable[str]) -> None:
        """Write the peers to disk."""
        with self._lock:
            peer_set = [self._trans.encode_peer(p).decode() for p in peers]
            text = json.dumps(peer_set or None) + "\n"
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o755)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)


__all__ = ["StaticPeers", "JSONPeers"]