"""A transport that carries RPCs between nodes over TCP connections.

Each request is framed as one byte giving the message type followed by the
MessagePack-encoded request. The reply is an error string followed by the
response object, both MessagePack-encoded. An InstallSnapshot request is
followed by the raw snapshot state, and its connection is never reused.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import queue
import socket
import threading
from typing import Any, BinaryIO, Callable, Optional

import msgpack

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
    TransportShutdownError,
)
from raftlite.future import AppendFuture
from raftlite.log import Log

RPC_APPEND_ENTRIES = 0
RPC_REQUEST_VOTE = 1
RPC_INSTALL_SNAPSHOT = 2

DEFAULT_TIMEOUT_SCALE = 256 * 1024
"""Snapshot bytes per multiple of the timeout allowed for InstallSnapshot."""

_RPC_MAX_PIPELINE = 128
_POLL = 0.05
_CHUNK = 65536

_LIST_ITEM_TYPES: dict[tuple[type, str], type] = {
    (AppendEntriesRequest, "entries"): Log,
}


def _split_addr(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address}")
    return host.strip("[]"), int(port)


def _format_addr(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _camel(name: str) -> str:
    return "".join(part.capitalize() for part in name.split("_"))


def _to_wire(obj: Any) -> Any:
    """Turn messages into plain maps keyed by their wire field names."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            _camel(f.name): _to_wire(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
            if f.compare
        }
    if isinstance(obj, enum.Enum):
        return int(obj.value)
    if isinstance(obj, (list, tuple)):
        return [_to_wire(item) for item in obj]
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return bytes(obj)
    return obj


def _convert(current: Any, value: Any, item_type: Optional[type]) -> Any:
    if isinstance(current, enum.Enum):
        return type(current)(int(value or 0))
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, bytes):
        if value is None:
            return b""
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)
    if isinstance(current, int):
        return int(value or 0)
    if isinstance(current, float):
        return float(value or 0)
    if isinstance(current, list):
        items = value or []
        if item_type is None:
            return list(items)
        return [_decode_struct(item_type, item) for item in items]
    return value


def _decode_struct(cls: type, raw: Any) -> Any:
    """Build a message of type ``cls`` from its wire map."""
    instance = cls()
    if raw is None:
        return instance
    if not isinstance(raw, dict):
        raise TransportError(f"malformed {cls.__name__} message")
    for f in dataclasses.fields(cls):
        key = _camel(f.name)
        if not f.compare or key not in raw:
            continue
        current = getattr(instance, f.name)
        item_type = _LIST_ITEM_TYPES.get((cls, f.name))
        setattr(instance, f.name, _convert(current, raw[key], item_type))
    return instance


class _NetConn:
    """A socket with buffered reads and writes of framed messages."""

    def __init__(self, target: str, sock: socket.socket) -> None:
        self.target = target
        self.sock = sock
        self._rbuf = bytearray()
        self._wbuf = bytearray()

    def release(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def set_timeout(self, timeout: Optional[float]) -> None:
        self.sock.settimeout(timeout)

    def _fill(self) -> None:
        data = self.sock.recv(_CHUNK)
        if not data:
            raise EOFError("connection closed")
        self._rbuf += data

    def read_byte(self) -> int:
        if not self._rbuf:
            self._fill()
        value = self._rbuf[0]
        del self._rbuf[0]
        return value

    def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes, blocking until all arrive or the peer closes."""
        while len(self._rbuf) < n:
            try:
                self._fill()
            except EOFError:
                break
        data = bytes(self._rbuf[:n])
        del self._rbuf[:n]
        return data

    def decode(self) -> Any:
        while True:
            if self._rbuf:
                unpacker = msgpack.Unpacker(raw=False, strict_map_key=False)
                unpacker.feed(bytes(self._rbuf))
                try:
                    obj = unpacker.unpack()
                except msgpack.OutOfData:
                    pass
                else:
                    del self._rbuf[: unpacker.tell()]
                    return obj
            self._fill()

    def write(self, data: bytes) -> None:
        self._wbuf += data

    def encode(self, obj: Any) -> None:
        self._wbuf += msgpack.packb(obj, use_bin_type=True)

    def flush(self) -> None:
        if self._wbuf:
            data = bytes(self._wbuf)
            self._wbuf.clear()
            self.sock.sendall(data)


class _LimitedReader:
    """Reads at most ``limit`` bytes of snapshot state from a connection."""

    def __init__(self, conn: _NetConn, limit: int) -> None:
        self._conn = conn
        self._remaining = max(limit, 0)

    def read(self, n: Optional[int] = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        want = self._remaining if n is None or n < 0 else min(n, self._remaining)
        data = self._conn.read(want)
        self._remaining -= len(data)
        return data


def _send_rpc(conn: _NetConn, rpc_type: int, args: Any) -> None:
    try:
        conn.write(bytes([rpc_type]))
        conn.encode(_to_wire(args))
        conn.flush()
    except Exception:
        conn.release()
        raise


def _decode_response(
    conn: _NetConn, resp_cls: type
) -> tuple[Any, Optional[TransportError]]:
    """Read a reply; the connection stays usable unless this raises."""
    try:
        rpc_error = conn.decode()
        resp = _decode_struct(resp_cls, conn.decode())
    except Exception:
        conn.release()
        raise
    return resp, (TransportError(str(rpc_error)) if rpc_error else None)


class TCPStreamLayer:
    """Listens for and dials plain TCP connections."""

    def __init__(self, listener: socket.socket, advertise: Optional[str] = None) -> None:
        self._listener = listener
        self._closed = threading.Event()
        if advertise:
            self._addr = advertise
        else:
            host, port = listener.getsockname()[:2]
            self._addr = _format_addr(host, port)
        listener.settimeout(_POLL)

    def accept(self) -> socket.socket:
        """Wait for and return the next incoming connection."""
        while True:
            if self._closed.is_set():
                raise OSError("listener closed")
            try:
                sock, _ = self._listener.accept()
            except socket.timeout:
                continue
            sock.settimeout(None)
            return sock

    def close(self) -> None:
        """Stop listening."""
        self._closed.set()
        self._listener.close()

    def addr(self) -> str:
        """Return the address other nodes use to reach this one."""
        return self._addr

    def dial(self, address: str, timeout: float) -> socket.socket:
        """Open a connection to ``address``."""
        return socket.create_connection(
            _split_addr(address), timeout=timeout if timeout and timeout > 0 else None
        )


class NetworkTransport:
    """Sends and receives RPCs over a stream layer, pooling outgoing connections."""

    def __init__(
        self,
        stream: TCPStreamLayer,
        max_pool: int,
        timeout: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._stream = stream
        self._max_pool = max_pool
        self._timeout = timeout
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self.timeout_scale = DEFAULT_TIMEOUT_SCALE
        self._conn_pool: dict[str, list[_NetConn]] = {}
        self._pool_lock = threading.Lock()
        self._consume: "queue.Queue[RPC]" = queue.Queue()
        self._heartbeat_fn: Optional[Callable[[RPC], None]] = None
        self._heartbeat_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        threading.Thread(target=self._listen, daemon=True).start()

    def __enter__(self) -> "NetworkTransport":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def set_heartbeat_handler(self, handler: Optional[Callable[[RPC], None]]) -> None:
        """Handle heartbeats directly, bypassing the consumer queue."""
        with self._heartbeat_lock:
            self._heartbeat_fn = handler

    def close(self) -> None:
        """Stop the transport; calling it again does nothing."""
        with self._shutdown_lock:
            if self._shutdown.is_set():
                return
            self._shutdown.set()
            self._stream.close()
            with self._pool_lock:
                pooled = [conn for conns in self._conn_pool.values() for conn in conns]
                self._conn_pool = {}
            for conn in pooled:
                conn.release()

    def consumer(self) -> "queue.Queue[RPC]":
        """Return the queue on which incoming RPCs arrive."""
        return self._consume

    def local_addr(self) -> str:
        """Return this transport's address."""
        return self._stream.addr()

    def is_shutdown(self) -> bool:
        """Return True once the transport has been closed."""
        return self._shutdown.is_set()

    def _get_conn(self, target: str) -> _NetConn:
        with self._pool_lock:
            conns = self._conn_pool.get(target)
            if conns:
                return conns.pop()
        return _NetConn(target, self._stream.dial(target, self._timeout))

    def _return_conn(self, conn: _NetConn) -> None:
        with self._pool_lock:
            conns = self._conn_pool.setdefault(conn.target, [])
            if not self.is_shutdown() and len(conns) < self._max_pool:
                conns.append(conn)
                return
        conn.release()

    def append_entries_pipeline(self, target: str) -> "NetPipeline":
        """Return a pipeline for sending AppendEntries requests to ``target``."""
        return NetPipeline(self, self._get_conn(target))

    def append_entries(
        self, target: str, args: AppendEntriesRequest
    ) -> AppendEntriesResponse:
        """Send an AppendEntries request and return the reply."""
        return self._generic_rpc(target, RPC_APPEND_ENTRIES, args, AppendEntriesResponse)

    def request_vote(self, target: str, args: RequestVoteRequest) -> RequestVoteResponse:
        """Send a RequestVote request and return the reply."""
        return self._generic_rpc(target, RPC_REQUEST_VOTE, args, RequestVoteResponse)

    def _generic_rpc(self, target: str, rpc_type: int, args: Any, resp_cls: type) -> Any:
        conn = self._get_conn(target)
        if self._timeout > 0:
            conn.set_timeout(self._timeout)
        _send_rpc(conn, rpc_type, args)
        resp, err = _decode_response(conn, resp_cls)
        self._return_conn(conn)
        if err is not None:
            raise err
        return resp

    def install_snapshot(
        self, target: str, args: InstallSnapshotRequest, data: BinaryIO
    ) -> InstallSnapshotResponse:
        """Send a snapshot's metadata and state, and return the reply."""
        conn = self._get_conn(target)
        try:
            if self._timeout > 0:
                scaled = self._timeout * (args.size // self.timeout_scale)
                conn.set_timeout(max(scaled, self._timeout))
            _send_rpc(conn, RPC_INSTALL_SNAPSHOT, args)
            while True:
                chunk = data.read(_CHUNK)
                if not chunk:
                    break
                conn.write(chunk)
            conn.flush()
            resp, err = _decode_response(conn, InstallSnapshotResponse)
        finally:
            conn.release()
        if err is not None:
            raise err
        return resp

    def encode_peer(self, peer: str) -> bytes:
        """Encode an address for storage."""
        return peer.encode()

    def decode_peer(self, buf: bytes) -> str:
        """Decode an address produced by ``encode_peer``."""
        return bytes(buf).decode()

    def _listen(self) -> None:
        while True:
            try:
                sock = self._stream.accept()
            except OSError as err:
                if self.is_shutdown():
                    return
                self._logger.error("raft-net: Failed to accept connection: %s", err)
                continue
            self._logger.debug(
                "raft-net: %s accepted connection from: %s",
                self.local_addr(),
                sock.getpeername(),
            )
            threading.Thread(target=self._handle_conn, args=(sock,), daemon=True).start()

    def _handle_conn(self, sock: socket.socket) -> None:
        conn = _NetConn("", sock)
        try:
            while True:
                try:
                    self._handle_command(conn)
                except EOFError:
                    return
                except Exception as err:
                    self._logger.error(
                        "raft-net: Failed to decode incoming command: %s", err
                    )
                    return
                try:
                    conn.flush()
                except OSError as err:
                    self._logger.error("raft-net: Failed to flush response: %s", err)
                    return
        finally:
            conn.release()

    def _handle_command(self, conn: _NetConn) -> None:
        rpc_type = conn.read_byte()
        resp_ch: "queue.Queue[RPCResponse]" = queue.Queue(maxsize=1)
        rpc = RPC(resp_chan=resp_ch)

        is_heartbeat = False
        if rpc_type == RPC_APPEND_ENTRIES:
            req = _decode_struct(AppendEntriesRequest, conn.decode())
            rpc.command = req
            is_heartbeat = (
                req.term != 0
                and bool(req.leader)
                and req.prev_log_entry == 0
                and req.prev_log_term == 0
                and not req.entries
                and req.leader_commit_index == 0
            )
        elif rpc_type == RPC_REQUEST_VOTE:
            rpc.command = _decode_struct(RequestVoteRequest, conn.decode())
        elif rpc_type == RPC_INSTALL_SNAPSHOT:
            req = _decode_struct(InstallSnapshotRequest, conn.decode())
            rpc.command = req
            rpc.reader = _LimitedReader(conn, req.size)  # type: ignore[assignment]
        else:
            raise TransportError(f"unknown rpc type {rpc_type}")

        handler = None
        if is_heartbeat:
            with self._heartbeat_lock:
                handler = self._heartbeat_fn
        if handler is not None:
            handler(rpc)
        else:
            if self.is_shutdown():
                raise TransportShutdownError()
            self._consume.put(rpc)

        while True:
            try:
                resp = resp_ch.get(timeout=_POLL)
                break
            except queue.Empty:
                if self.is_shutdown():
                    raise TransportShutdownError() from None
        conn.encode("" if resp.error is None else str(resp.error))
        conn.encode(_to_wire(resp.response))


class NetPipeline:
    """Sends AppendEntries requests on one connection without awaiting replies."""

    def __init__(self, trans: NetworkTransport, conn: _NetConn) -> None:
        self._conn = conn
        self._timeout = trans._timeout
        self._done: "queue.Queue[AppendFuture]" = queue.Queue(maxsize=_RPC_MAX_PIPELINE)
        self._inprogress: "queue.Queue[AppendFuture]" = queue.Queue(
            maxsize=_RPC_MAX_PIPELINE
        )
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        threading.Thread(target=self._decode_responses, daemon=True).start()

    def __enter__(self) -> "NetPipeline":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _put(self, q: "queue.Queue[AppendFuture]", item: AppendFuture) -> bool:
        while not self._shutdown.is_set():
            try:
                q.put(item, timeout=_POLL)
                return True
            except queue.Full:
                continue
        return False

    def _decode_responses(self) -> None:
        while not self._shutdown.is_set():
            try:
                future = self._inprogress.get(timeout=_POLL)
            except queue.Empty:
                continue
            err: Optional[BaseException]
            try:
                if self._timeout > 0:
                    self._conn.set_timeout(self._timeout)
                resp, err = _decode_response(self._conn, AppendEntriesResponse)
            except Exception as exc:
                err = exc
            else:
                future.resp = resp
            future.respond(err)
            if not self._put(self._done, future):
                return

    def append_entries(self, args: AppendEntriesRequest) -> AppendFuture:
        """Send a request and return a future completed by its reply."""
        future = AppendFuture(args)
        if self._timeout > 0:
            self._conn.set_timeout(self._timeout)
        _send_rpc(self._conn, RPC_APPEND_ENTRIES, args)
        if not self._put(self._inprogress, future):
            raise PipelineShutdownError()
        return future

    def consumer(self) -> "queue.Queue[AppendFuture]":
        """Return the queue of completed futures, in send order."""
        return self._done

    def close(self) -> None:
        """Release the connection and stop the pipeline."""
        with self._shutdown_lock:
            if self._shutdown.is_set():
                return
            self._conn.release()
            self._shutdown.set()


def new_tcp_transport(
    bind_addr: str,
    advertise: Optional[str],
    max_pool: int,
    timeout: float,
    logger: Optional[logging.Logger],
) -> NetworkTransport:
    """Listen on ``bind_addr`` ("host:port") and return a transport over TCP."""
    host, port = _split_addr(bind_addr)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    listener = socket.create_server((host, port), family=family)
    try:
        stream = TCPStreamLayer(listener, advertise)
    except Exception:
        listener.close()
        raise
    return NetworkTransport(stream, max_pool, timeout, logger)


__all__ = [
    "DEFAULT_TIMEOUT_SCALE",
    "TCPStreamLayer",
    "NetworkTransport",
    "NetPipeline",
    "new_tcp_transport",
]