"""A transport that routes RPCs in memory, for exercising nodes without a network."""

from __future__ import annotations

import queue
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Optional

from raftlite.commands import (
    RPC,
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    PipelineShutdownError,
    RequestVoteRequest,
    RequestVoteResponse,
    RPCResponse,
    TransportError,
)
from raftlite.future import AppendFuture

_POLL = 0.01


def new_inmem_addr() -> str:
    """Return a new random address."""
    return str(uuid.uuid4())


@dataclass
class _PipelineInflight:
    future: AppendFuture
    resp_ch: "queue.Queue[RPCResponse]"


class InmemTransport:
    """Routes RPCs between transports connected in the same process."""

    def __init__(self, addr: str = "", timeout: float = 0.05) -> None:
        self._addr = addr or new_inmem_addr()
        self._lock = threading.RLock()
        self._consumer: "queue.Queue[RPC]" = queue.Queue(maxsize=16)
        self._peers: dict[str, InmemTransport] = {}
        self._pipelines: list[InmemPipeline] = []
        self.timeout = timeout

    def set_heartbeat_handler(self, handler: Callable[[RPC], None]) -> None:
        """Accept a heartbeat fast path; this transport does not use one."""

    def consumer(self) -> "queue.Queue[RPC]":
        """Return the queue on which incoming RPCs arrive."""
        return self._consumer

    def local_addr(self) -> str:
        """Return this transport's address."""
        return self._addr

    def _peer(self, target: str) -> "InmemTransport":
        with self._lock:
            peer = self._peers.get(target)
        if peer is None:
            raise TransportError(f"failed to connect to peer: {target}")
        return peer

    def append_entries_pipeline(self, target: str) -> "InmemPipeline":
        """Return a pipeline for sending AppendEntries requests to ``target``."""
        peer = self._peer(target)
        pipeline = InmemPipeline(self, peer, target)
        with self._lock:
            self._pipelines.append(pipeline)
        return pipeline

    def append_entries(
        self, target: str, args: AppendEntriesRequest
    ) -> AppendEntriesResponse:
        """Send an AppendEntries request and return the reply."""
        return self._make_rpc(target, args, None, self.timeout)

    def request_vote(self, target: str, args: RequestVoteRequest) -> RequestVoteResponse:
        """Send a RequestVote request and return the reply."""
        return self._make_rpc(target, args, None, self.timeout)

    def install_snapshot(
        self, target: str, args: InstallSnapshotRequest, data: BinaryIO
    ) -> InstallSnapshotResponse:
        """Send an InstallSnapshot request with its state and return the reply."""
        return self._make_rpc(target, args, data, 10 * self.timeout)

    def _make_rpc(
        self, target: str, args: Any, reader: Optional[BinaryIO], timeout: float
    ) -> Any:
        peer = self._peer(target)
        resp_ch: "queue.Queue[RPCResponse]" = queue.Queue()
        peer._consumer.put(RPC(command=args, reader=reader, resp_chan=resp_ch))
        try:
            result = resp_ch.get(timeout=timeout)
        except queue.Empty:
            raise TransportError("command timed out") from None
        if result.error is not None:
            raise result.error
        return result.response

    def encode_peer(self, peer: str) -> bytes:
        """Encode an address; the address is used as is."""
        return peer.encode()

    def decode_peer(self, buf: bytes) -> str:
        """Decode an address produced by ``encode_peer``."""
        return bytes(buf).decode()

    def connect(self, peer: str, transport: "InmemTransport") -> None:
        """Route RPCs addressed to ``peer`` to ``transport``."""
        if not isinstance(transport, InmemTransport):
            raise TypeError("can only connect to another InmemTransport")
        with self._lock:
            self._peers[peer] = transport

    def disconnect(self, peer: str) -> None:
        """Stop routing to ``peer`` and close its pipelines."""
        with self._lock:
            self._peers.pop(peer, None)
            kept = []
            for pipeline in self._pipelines:
                if pipeline.peer_addr == peer:
                    pipeline.close()
                else:
                    kept.append(pipeline)
            self._pipelines = kept

    def disconnect_all(self) -> None:
        """Remove every route and close every pipeline."""
        with self._lock:
            self._peers = {}
            for pipeline in self._pipelines:
                pipeline.close()
            self._pipelines = []

    def close(self) -> None:
        """Permanently disable the transport."""
        self.disconnect_all()


class InmemPipeline:
    """Sends AppendEntries requests without waiting for each reply."""

    def __init__(
        self, trans: InmemTransport, peer: InmemTransport, peer_addr: str
    ) -> None:
        self._trans = trans
        self._peer = peer
        self.peer_addr = peer_addr
        self._done: "queue.Queue[AppendFuture]" = queue.Queue(maxsize=16)
        self._inprogress: "queue.Queue[_PipelineInflight]" = queue.Queue(maxsize=16)
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._worker = threading.Thread(target=self._decode_responses, daemon=True)
        self._worker.start()

    def _offer(self, q: "queue.Queue[Any]", item: Any, deadline: Optional[float]) -> None:
        """Put ``item`` into ``q``, honouring shutdown and an optional deadline."""
        while True:
            if self._shutdown.is_set():
                raise PipelineShutdownError()
            wait = _POLL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError()
                wait = min(wait, remaining)
            try:
                q.put(item, timeout=wait)
                return
            except queue.Full:
                continue

    def _take(self, q: "queue.Queue[Any]", deadline: Optional[float]) -> Any:
        """Get an item from ``q``, honouring shutdown and an optional deadline."""
        while True:
            if self._shutdown.is_set():
                raise PipelineShutdownError()
            wait = _POLL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError()
                wait = min(wait, remaining)
            try:
                return q.get(timeout=wait)
            except queue.Empty:
                continue

    def _decode_responses(self) -> None:
        timeout = self._trans.timeout
        try:
            while True:
                inp: _PipelineInflight = self._take(self._inprogress, None)
                deadline = time.monotonic() + timeout if timeout > 0 else None
                try:
                    result: RPCResponse = self._take(inp.resp_ch, deadline)
                except TimeoutError:
                    inp.future.respond(TransportError("command timed out"))
                else:
                    if isinstance(result.response, AppendEntriesResponse):
                        inp.future.resp = result.response
                    inp.future.respond(result.error)
                self._offer(self._done, inp.future, None)
        except PipelineShutdownError:
            return

    def append_entries(self, args: AppendEntriesRequest) -> AppendFuture:
        """Send a request and return a future that completes with its reply."""
        future = AppendFuture(args)
        timeout = self._trans.timeout
        deadline = time.monotonic() + timeout if timeout > 0 else None
        resp_ch: "queue.Queue[RPCResponse]" = queue.Queue(maxsize=1)
        rpc = RPC(command=args, resp_chan=resp_ch)
        try:
            self._offer(self._peer.consumer(), rpc, deadline)
        except TimeoutError:
            raise TransportError("command enqueue timeout") from None
        self._offer(self._inprogress, _PipelineInflight(future, resp_ch), None)
        return future

    def consumer(self) -> "queue.Queue[AppendFuture]":
        """Return the queue of completed futures, in send order."""
        return self._done

    def close(self) -> None:
        """Shut the pipeline down; further sends fail."""
        with self._shutdown_lock:
            self._shutdown.set()


__all__ = ["new_inmem_addr", "InmemTransport", "InmemPipeline"]