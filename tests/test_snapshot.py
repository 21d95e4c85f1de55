import base64
import json
import os
import shutil

import pytest

from raftlite.snapshot import (
    DiscardSnapshotSink,
    DiscardSnapshotStore,
    FileSnapshotStore,
    SnapshotError,
    SnapshotSink,
)

PEERS = b"all my lovely friends"


@pytest.fixture
def store(tmp_path):
    return FileSnapshotStore(str(tmp_path), 3)


def test_discard_store_sink():
    store = DiscardSnapshotStore()
    sink = store.create(10, 3, PEERS)
    assert isinstance(sink, SnapshotSink)
    assert isinstance(sink, DiscardSnapshotSink)
    assert sink.id() == "discard"
    assert sink.write(b"hello") == 5
    assert store.list() == []


def test_discard_store_open_unsupported():
    with pytest.raises(SnapshotError, match="open is not supported"):
        DiscardSnapshotStore().open("discard")


def test_file_sink_is_snapshot_sink(store):
    sink = store.create(1, 1, PEERS)
    assert isinstance(sink, SnapshotSink)
    sink.cancel()
    assert store.list() == []


def test_create_snapshot_missing_parent_dir(tmp_path):
    parent = tmp_path / "parent"
    child = parent / "raft"
    child.mkdir(parents=True)
    snap = FileSnapshotStore(str(child), 3)
    shutil.rmtree(parent)
    sink = snap.create(10, 3, PEERS)
    sink.close()
    listed = snap.list()
    assert len(listed) == 1
    assert listed[0].index == 10


def test_create_snapshot(store):
    assert store.list() == []

    sink = store.create(10, 3, PEERS)
    assert store.list() == []

    assert sink.write(b"first\n") == 6
    assert sink.write(b"second\n") == 7
    sink.close()

    snaps = store.list()
    assert len(snaps) == 1
    latest = snaps[0]
    assert latest.index == 10
    assert latest.term == 3
    assert latest.peers == PEERS
    assert latest.size == 13
    assert latest.id == sink.id()

    meta, reader = store.open(latest.id)
    with reader:
        content = reader.read()
    assert content == b"first\nsecond\n"
    assert meta == latest


def test_cancel_snapshot(store):
    sink = store.create(10, 3, PEERS)
    sink.cancel()
    assert store.list() == []
    assert os.listdir(store.path) == []


def test_retention(tmp_path):
    snap = FileSnapshotStore(str(tmp_path), 2)
    for i in range(10, 15):
        snap.create(i, 3, PEERS).close()
    snaps = snap.list()
    assert len(snaps) == 2
    assert snaps[0].index == 14
    assert snaps[1].index == 13
    assert len(os.listdir(snap.path)) == 2


def test_bad_base_path_fails(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_bytes(b"not a directory")
    with pytest.raises(SnapshotError):
        FileSnapshotStore(str(blocker), 3)


def test_retain_must_be_positive(tmp_path):
    with pytest.raises(SnapshotError, match="must retain at least one snapshot"):
        FileSnapshotStore(str(tmp_path), 0)


def test_missing_parent_dir(tmp_path):
    parent = tmp_path / "parent"
    child = parent / "raft"
    child.mkdir(parents=True)
    shutil.rmtree(parent)
    snap = FileSnapshotStore(str(child), 3)
    assert os.path.isdir(snap.path)
    assert snap.list() == []


def test_ordering(store):
    store.create(130350, 5, PEERS).close()
    store.create(204917, 36, PEERS).close()
    snaps = store.list()
    assert len(snaps) == 2
    assert snaps[0].term == 36
    assert snaps[1].term == 5


def test_crc_mismatch(store):
    sink = store.create(10, 3, PEERS)
    sink.write(b"payload")
    sink.close()
    state = os.path.join(store.path, sink.id(), "state.bin")
    with open(state, "wb") as fh:
        fh.write(b"tampered")
    with pytest.raises(SnapshotError, match="CRC mismatch"):
        store.open(sink.id())


def test_stored_crc_is_crc64_ecma(store):
    sink = store.create(1, 1, PEERS)
    sink.write(b"123456789")
    sink.close()
    with open(os.path.join(store.path, sink.id(), "meta.json"), encoding="utf-8") as fh:
        raw = json.load(fh)
    assert base64.b64decode(raw["CRC"]) == bytes.fromhex("995dc9bbdf1939fa")
    assert raw["Size"] == 9
    assert base64.b64decode(raw["Peers"]) == PEERS


def test_close_is_idempotent(store):
    sink = store.create(7, 2, PEERS)
    sink.write(b"x")
    sink.close()
    sink.close()
    sink.cancel()
    snaps = store.list()
    assert len(snaps) == 1
    assert snaps[0].size == 1


def test_context_manager_closes_on_success(store):
    with store.create(4, 1, PEERS) as sink:
        sink.write(b"abc")
    snaps = store.list()
    assert [s.index for s in snaps] == [4]


def test_context_manager_cancels_on_error(store):
    with pytest.raises(RuntimeError):
        with store.create(4, 1, PEERS) as sink:
            sink.write(b"abc")
            raise RuntimeError("boom")
    assert store.list() == []
    assert os.listdir(store.path) == []


def test_temporary_snapshot_ignored(store):
    sink = store.create(3, 1, PEERS)
    sink.write(b"data")
    assert store.list() == []
    assert any(name.endswith(".tmp") for name in os.listdir(store.path))
    sink.close()
    assert [s.index for s in store.list()] == [3]


def test_open_unknown_snapshot(store):
    with pytest.raises(FileNotFoundError):
        store.open("1-1-1")