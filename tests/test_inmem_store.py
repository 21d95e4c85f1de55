import pytest

from raftlite.inmem_store import InmemStore
from raftlite.log import Log, LogNotFoundError, LogType


@pytest.fixture
def store():
    return InmemStore()


def test_empty_store_indexes(store):
    assert store.first_index() == 0
    assert store.last_index() == 0


def test_store_and_get_round_trip(store):
    logs = [Log(index=i, term=2, type=LogType.NOOP, data=b"log%d" % i) for i in (1, 2, 3)]
    store.store_logs(logs)
    for log in logs:
        assert store.get_log(log.index) == log
    assert store.first_index() == logs[0].index
    assert store.last_index() == logs[-1].index


def test_store_log_single(store):
    log = Log(index=7, data=b"log1")
    store.store_log(log)
    assert store.get_log(7) == log
    assert store.first_index() == store.last_index() == log.index


def test_get_missing_raises(store):
    with pytest.raises(LogNotFoundError):
        store.get_log(1)


def test_get_log_returns_copy(store):
    store.store_log(Log(index=1, data=b"original"))
    fetched = store.get_log(1)
    fetched.data = b"changed"
    assert store.get_log(1).data == b"original"


def test_delete_range(store):
    store.store_logs([Log(index=i) for i in (1, 2, 3)])
    store.delete_range(1, 2)
    for index in (1, 2):
        with pytest.raises(LogNotFoundError):
            store.get_log(index)
    assert store.get_log(3).index == 3
    assert store.first_index() == store.last_index()


def test_set_get_round_trip(store):
    assert store.get(b"bad") is None
    store.set(b"hello", b"world")
    assert store.get(b"hello") == b"world"


def test_uint64_round_trip(store):
    assert store.get_uint64(b"bad") == 0
    store.set_uint64(b"abc", 123)
    assert store.get_uint64(b"abc") == 123


def test_uint64_and_bytes_are_separate(store):
    store.set_uint64(b"key", 42)
    assert store.get(b"key") is None