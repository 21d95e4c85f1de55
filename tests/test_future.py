import queue
import threading

from raftlite.commands import AppendEntriesRequest, AppendEntriesResponse
from raftlite.future import (
    AppendFuture,
    DeferredFuture,
    ErrorFuture,
    LogFuture,
    PeerFuture,
    RestoreFuture,
    VerifyFuture,
)
from raftlite.log import Log


def test_defer_future_success():
    f = DeferredFuture()
    f.respond(None)
    assert f.error() is None
    assert f.error() is None


def test_defer_future_error():
    want = Exception("x")
    f = DeferredFuture()
    f.respond(want)
    assert f.error() is want
    assert f.error() is want


def test_defer_future_concurrent():
    want = Exception("x")
    f = DeferredFuture()
    thread = threading.Thread(target=f.respond, args=(want,))
    thread.start()
    got = f.error()
    thread.join()
    assert got is want


def test_defer_future_second_respond_ignored():
    first = Exception("first")
    f = DeferredFuture()
    f.respond(first)
    f.respond(Exception("second"))
    assert f.error() is first


def test_error_future():
    err = Exception("static")
    f = ErrorFuture(err)
    assert f.error() is err
    assert f.response() is None
    assert f.index() == 0


def test_log_future_accessors():
    f = LogFuture(log=Log(index=5, data=b"data"))
    f.fsm_response = "applied"
    f.respond(None)
    assert f.error() is None
    assert f.index() == 5
    assert f.response() == "applied"


def test_log_future_default_log():
    f = LogFuture()
    assert f.index() == 0
    assert f.response() is None


def test_peer_and_restore_futures():
    peers = ["a", "b"]
    pf = PeerFuture(peers)
    peers.append("c")
    assert pf.peers == ["a", "b"]
    rf = RestoreFuture("snap-1")
    assert rf.id == "snap-1"
    rf.respond(None)
    assert rf.error() is None


def test_verify_future_quorum():
    ch = queue.Queue()
    f = VerifyFuture(ch, quorum_size=2)
    f.vote(True)
    assert ch.empty()
    f.vote(True)
    assert ch.get_nowait() is f
    assert f.notify_ch is None
    f.vote(True)
    assert ch.empty()
    assert f.votes == 2


def test_verify_future_rejection_notifies_immediately():
    ch = queue.Queue()
    f = VerifyFuture(ch, quorum_size=3)
    f.vote(False)
    assert ch.get_nowait() is f
    f.vote(False)
    assert ch.empty()
    assert f.votes == 0


def test_append_future_accessors():
    args = AppendEntriesRequest(term=10, leader=b"cartman")
    resp = AppendEntriesResponse()
    f = AppendFuture(args, resp, start=123.0)
    assert f.start() == 123.0
    assert f.request() is args
    assert f.response() is resp
    f.resp = AppendEntriesResponse(term=4, last_log=90, success=True)
    f.respond(None)
    assert f.error() is None
    assert f.response() == AppendEntriesResponse(term=4, last_log=90, success=True)