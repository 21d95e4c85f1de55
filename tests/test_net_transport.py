import io
import queue
import socket
import threading
import time

import pytest

from raftlite.commands import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    RequestVoteRequest,
    RequestVoteResponse,
    TransportError,
)
from raftlite.log import Log, LogType
from raftlite.net_transport import new_tcp_transport


@pytest.fixture
def make_transport():
    created = []

    def factory(max_pool=2, timeout=1.0, advertise=None):
        trans = new_tcp_transport("127.0.0.1:0", advertise, max_pool, timeout, None)
        created.append(trans)
        return trans

    yield factory
    for trans in created:
        trans.close()


def append_args():
    return AppendEntriesRequest(
        term=10,
        leader=b"cartman",
        prev_log_entry=100,
        prev_log_term=4,
        entries=[Log(index=101, term=4, type=LogType.NOOP)],
        leader_commit_index=90,
    )


def append_resp():
    return AppendEntriesResponse(term=4, last_log=90, success=True)


def serve(trans, count, handler):
    received = []

    def run():
        for _ in range(count):
            try:
                rpc = trans.consumer().get(timeout=2)
            except queue.Empty:
                return
            received.append(rpc.command)
            handler(rpc)

    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    return received, worker


def test_start_stop(make_transport):
    trans = make_transport()
    assert not trans.is_shutdown()
    trans.close()
    assert trans.is_shutdown()
    trans.close()
    assert trans.is_shutdown()


def test_heartbeat_fast_path(make_transport):
    trans1 = make_transport()
    args = AppendEntriesRequest(term=10, leader=b"cartman")
    resp = append_resp()
    seen = []

    def fastpath(rpc):
        seen.append(rpc.command)
        rpc.respond(resp, None)

    trans1.set_heartbeat_handler(fastpath)
    trans2 = make_transport()
    out = trans2.append_entries(trans1.local_addr(), args)
    assert out == resp
    assert seen == [args]
    assert trans1.consumer().empty()


def test_append_entries(make_transport):
    trans1 = make_transport()
    heartbeats = []
    trans1.set_heartbeat_handler(heartbeats.append)
    args, resp = append_args(), append_resp()
    received, worker = serve(trans1, 1, lambda rpc: rpc.respond(resp, None))
    trans2 = make_transport()
    out = trans2.append_entries(trans1.local_addr(), args)
    worker.join(timeout=2)
    assert out == resp
    assert received == [args]
    assert heartbeats == []


def test_append_entries_pipeline(make_transport):
    trans1 = make_transport()
    args, resp = append_args(), append_resp()
    received, worker = serve(trans1, 10, lambda rpc: rpc.respond(resp, None))
    trans2 = make_transport()
    pipeline = trans2.append_entries_pipeline(trans1.local_addr())
    try:
        futures = [pipeline.append_entries(args) for _ in range(10)]
        ready = [pipeline.consumer().get(timeout=2) for _ in range(10)]
    finally:
        pipeline.close()
    worker.join(timeout=2)
    assert ready == futures
    assert all(f.error() is None for f in ready)
    assert all(f.response() == resp for f in ready)
    assert all(f.request() == args for f in ready)
    assert received == [args] * 10


def test_request_vote(make_transport):
    trans1 = make_transport()
    args = RequestVoteRequest(
        term=20, candidate=b"butters", last_log_index=100, last_log_term=19
    )
    resp = RequestVoteResponse(term=100, peers=b"blah", granted=False)
    received, worker = serve(trans1, 1, lambda rpc: rpc.respond(resp, None))
    trans2 = make_transport()
    out = trans2.request_vote(trans1.local_addr(), args)
    worker.join(timeout=2)
    assert out == resp
    assert received == [args]


def test_install_snapshot(make_transport):
    trans1 = make_transport()
    args = InstallSnapshotRequest(
        term=10,
        leader=b"kyle",
        last_log_index=100,
        last_log_term=9,
        peers=b"blah blah",
        size=10,
    )
    resp = InstallSnapshotResponse(term=10, success=True)
    state = []

    def handler(rpc):
        state.append(rpc.reader.read(10))
        rpc.respond(resp, None)

    received, worker = serve(trans1, 1, handler)
    trans2 = make_transport()
    out = trans2.install_snapshot(
        trans1.local_addr(), args, io.BytesIO(b"0123456789")
    )
    worker.join(timeout=2)
    assert out == resp
    assert received == [args]
    assert state == [b"0123456789"]


def test_encode_decode(make_transport):
    trans = make_transport()
    local = trans.local_addr()
    assert trans.decode_peer(trans.encode_peer(local)) == local


def test_pooled_conn(make_transport):
    trans1 = make_transport()
    args, resp = append_args(), append_resp()

    def slow(rpc):
        time.sleep(0.05)
        rpc.respond(resp, None)

    received, worker = serve(trans1, 5, slow)
    trans2 = make_transport(max_pool=3)
    addr = trans1.local_addr()
    barrier = threading.Barrier(5)
    results, errors = [], []

    def call():
        barrier.wait()
        try:
            results.append(trans2.append_entries(addr, args))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=call) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    worker.join(timeout=2)
    assert errors == []
    assert results == [resp] * 5
    assert len(trans2._conn_pool[addr]) == 3


def test_remote_error_is_raised_and_connection_reused(make_transport):
    trans1 = make_transport()
    args, resp = append_args(), append_resp()
    replies = iter([(None, TransportError("boom")), (resp, None)])
    received, worker = serve(trans1, 2, lambda rpc: rpc.respond(*next(replies)))
    trans2 = make_transport()
    addr = trans1.local_addr()
    with pytest.raises(TransportError, match="boom"):
        trans2.append_entries(addr, args)
    assert trans2.append_entries(addr, args) == resp
    worker.join(timeout=2)
    assert len(received) == 2


def test_dial_failure_raises(make_transport):
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    trans = make_transport()
    with pytest.raises(OSError):
        trans.append_entries(f"127.0.0.1:{port}", append_args())


def test_advertised_address(make_transport):
    trans = make_transport(advertise="10.0.0.1:9000")
    assert trans.local_addr() == "10.0.0.1:9000"