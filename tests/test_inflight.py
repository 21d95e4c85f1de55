import queue

import pytest

from raftlite.future import LogFuture
from raftlite.inflight import Inflight, MajorityQuorum
from raftlite.log import Log


def _future(index, cluster_size=5):
    return LogFuture(log=Log(index=index), policy=MajorityQuorum(cluster_size))


@pytest.fixture
def commit_ch():
    return queue.Queue(maxsize=1)


def test_majority_quorum_of_five_needs_three():
    quorum = MajorityQuorum(5)
    assert [quorum.commit(), quorum.commit(), quorum.commit()] == [False, False, True]
    assert quorum.is_committed() is True


def test_majority_quorum_not_committed_initially():
    assert MajorityQuorum(3).is_committed() is False


def test_start_commit(commit_ch):
    inflight = Inflight(commit_ch)
    inflight.start(_future(1))

    inflight.commit(1)
    assert len(inflight.committed()) == 0

    inflight.commit(1)
    assert len(inflight.committed()) == 1

    # Already committed but should work anyway.
    inflight.commit(1)
    assert len(inflight.committed()) == 0


def test_commit_notifies_channel(commit_ch):
    inflight = Inflight(commit_ch)
    inflight.start(_future(1, cluster_size=1))
    assert commit_ch.get_nowait() is None
    assert [f.index() for f in inflight.committed()] == [1]


def test_cancel(commit_ch):
    inflight = Inflight(commit_ch)
    future = _future(1, cluster_size=3)
    inflight.start(future)

    err = RuntimeError("error 1")
    inflight.cancel(err)

    assert future.error() is err
    assert inflight.committed() == []


def test_cancel_fails_committed_but_unprocessed(commit_ch):
    inflight = Inflight(commit_ch)
    future = _future(1, cluster_size=1)
    inflight.start(future)
    err = RuntimeError("stepped down")
    inflight.cancel(err)
    assert future.error() is err


def test_start_all(commit_ch):
    inflight = Inflight(commit_ch)
    futures = [_future(2), _future(3), _future(4)]
    inflight.start_all(futures)

    inflight.commit_range(1, 5)
    inflight.commit_range(1, 4)
    inflight.commit_range(1, 10)

    assert len(inflight.committed()) == 3


def test_commit_range(commit_ch):
    inflight = Inflight(commit_ch)
    for index in (2, 3, 4):
        inflight.start(_future(index))

    inflight.commit_range(1, 5)
    inflight.commit_range(1, 4)
    inflight.commit_range(1, 10)

    committed = inflight.committed()
    assert len(committed) == 3
    assert [f.index() for f in committed] == [2, 3, 4]


def test_non_contiguous(commit_ch):
    inflight = Inflight(commit_ch)
    inflight.start(_future(2))
    inflight.start(_future(3))

    inflight.commit(3)
    inflight.commit(3)
    inflight.commit(3)
    assert len(inflight.committed()) == 0

    inflight.commit(2)
    inflight.commit(2)
    inflight.commit(2)

    committed = inflight.committed()
    assert len(committed) == 2
    assert committed[0].log.index == 2
    assert committed[1].log.index == 3