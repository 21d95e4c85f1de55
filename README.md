# raftlite

Building blocks for a Raft consensus implementation: the replicated-log
data types and the pieces that sit around them — log and stable stores,
snapshot stores, in-order commit tracking, peer persistence, and
in-memory and TCP transports.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `raftlite.log` | `Log`, `LogType`, the `LogStore` base class, `LogNotFoundError` |
| `raftlite.commands` | `AppendEntries*`, `RequestVote*`, `InstallSnapshot*` messages; `RPC`, `RPCResponse`; `TransportError`, `TransportShutdownError`, `PipelineShutdownError` |
| `raftlite.config` | `Config` (durations in seconds), `default_config()`, `validate_config()`, `ConfigError` |
| `raftlite.future` | `ErrorFuture`, `DeferredFuture`, `LogFuture`, `PeerFuture`, `SnapshotFuture`, `RestoreFuture`, `VerifyFuture`, `AppendFuture` |
| `raftlite.inflight` | `Inflight`, which hands over committed entries strictly in index order, and `MajorityQuorum` |
| `raftlite.inmem_store` | `InmemStore`, an in-memory log and key/value store meant for tests |
| `raftlite.log_cache` | `LogCache`, a ring-buffer cache of recent entries in front of any `LogStore` |
| `raftlite.bolt_store` | `BoltStore`, a durable log and key/value store in a single SQLite file; `encode_log`/`decode_log` (MessagePack) and `uint64_to_bytes`/`bytes_to_uint64` |
| `raftlite.snapshot` | `FileSnapshotStore` and `FileSnapshotSink` (CRC-64 checked, keeps the newest `retain` snapshots), `DiscardSnapshotStore`, `SnapshotMeta`, and the `FSM`, `FSMSnapshot` and `SnapshotSink` interfaces |
| `raftlite.peer` | `StaticPeers` (in memory) and `JSONPeers` (a `peers.json` file) |
| `raftlite.inmem_transport` | `InmemTransport` and `InmemPipeline` for routing RPCs inside one process |
| `raftlite.net_transport` | `NetworkTransport`, `NetPipeline`, `TCPStreamLayer` and `new_tcp_transport()`: RPCs over TCP with MessagePack framing and a connection pool |
| `raftlite.bench` | `bench_*` functions that time an operation `n` times on a store and return the elapsed seconds |

## Examples

A cached in-memory log store:

```python
from raftlite.log import Log
from raftlite.inmem_store import InmemStore
from raftlite.log_cache import LogCache

store = InmemStore()
cache = LogCache(16, store)
cache.store_logs([Log(index=1, data=b"first"), Log(index=2, data=b"second")])
assert cache.last_index() == 2
assert cache.get_log(1).data == b"first"
```

A durable store, which also keeps key/value pairs outside the log:

```python
from raftlite.bolt_store import BoltStore, KeyNotFoundError
from raftlite.log import Log

with BoltStore("/tmp/raft.db") as store:
    store.store_log(Log(index=1, term=1, data=b"entry"))
    store.set_uint64(b"CurrentTerm", 1)
    assert store.get_uint64(b"CurrentTerm") == 1
    try:
        store.get(b"missing")
    except KeyNotFoundError:
        pass
```

Writing and reading back a file snapshot:

```python
from raftlite.snapshot import FileSnapshotStore

snapshots = FileSnapshotStore("/tmp/raft-data", 3)
with snapshots.create(10, 3, b"peer-a,peer-b") as sink:  # closed on success, cancelled on error
    sink.write(b"state bytes")

latest = snapshots.list()[0]  # newest first
meta, reader = snapshots.open(latest.id)
with reader:
    assert reader.read() == b"state bytes"
```

Checking a configuration:

```python
from raftlite.config import default_config, validate_config

config = default_config()
config.heartbeat_timeout = 0.05
config.election_timeout = 0.05
config.leader_lease_timeout = 0.05
validate_config(config)  # raises ConfigError if a setting is out of range
```

Sending a vote request between two TCP transports:

```python
import threading

from raftlite.commands import RequestVoteRequest, RequestVoteResponse
from raftlite.net_transport import new_tcp_transport

server = new_tcp_transport("127.0.0.1:0", None, 2, 1.0, None)
client = new_tcp_transport("127.0.0.1:0", None, 2, 1.0, None)

def answer():
    rpc = server.consumer().get()
    rpc.respond(RequestVoteResponse(term=rpc.command.term, granted=True), None)

threading.Thread(target=answer).start()
reply = client.request_vote(server.local_addr(), RequestVoteRequest(term=5, candidate=b"node-a"))
assert reply.granted
client.close()
server.close()
```

`InmemTransport` works the same way inside one process once each side has
been told about the other with `connect(addr, transport)`.

## Errors

Failures are raised as exceptions: a missing log entry raises
`LogNotFoundError`, a missing key in `BoltStore` raises `KeyNotFoundError`,
a bad configuration raises `ConfigError`, snapshot problems (including a
checksum mismatch) raise `SnapshotError`, unreachable peers and timeouts
raise `TransportError`, and a closed pipeline raises `PipelineShutdownError`.

## What this package does not do

There is no consensus node here: nothing runs leader elections, replicates
entries to followers or applies committed entries to an `FSM`. The package
provides the parts such a node is built from. There is also no command-line
program and no server beyond the RPC listener of `NetworkTransport`.