# raftkv

raftkv is a replicated key-value store. Every node runs a Raft consensus
module (`raftkv.raft.Raft`) and a key-value state machine on top of it
(`raftkv.kvserver.KvServer`). Clients send `Get` and `PutAppend` requests
to a node, and only the current leader accepts them. A request is
answered once the Raft log has committed it.

Nodes talk to each other and to clients over a small length-prefixed RPC
protocol. The package needs nothing beyond the Python standard library.

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running a node

The package installs one command, `raftkv-server`. It starts a single
node:

```
raftkv-server NODE_INFO_FILE ME PORT [--max-raft-state N]
```

- `NODE_INFO_FILE` is the file listing the addresses of all nodes.
- `ME` is the index of this node.
- `PORT` is the port to serve on.
- `--max-raft-state` is the snapshot threshold. The default, `-1`,
  disables snapshots.

`raftkv-server --help` prints the same list.

When it starts, the node goes through these steps:

1. It publishes its services and starts serving in a background thread.
   It listens on this host's address, as `socket.gethostbyname_ex`
   reports it. It appends its `node<ME>ip` and `node<ME>port` lines to
   `test.conf` in the current directory. That file is
   `RpcProvider.run`'s default `config_path`, and it does not have to be
   the node information file.
2. It waits six seconds so the other nodes can come up. Then it reads
   `NODE_INFO_FILE` and connects to every other node listed there.
3. It starts Raft with its timers (`RaftTicker`) and keeps applying
   committed commands to its store until it is interrupted.

If `NODE_INFO_FILE` does not exist, the command logs an error and exits
with status 1. The persistence files are kept in the current directory.

## The node information file

The node information file is a plain `key=value` file:

- Blank lines are ignored.
- Lines that start with `#` are ignored.
- Lines without `=` are ignored.
- Spaces around keys and values are trimmed.
- If a key appears more than once, the first value wins.

Nodes are numbered from 0. The list of nodes ends at the first index that
has no `node<N>ip` entry.

```
# cluster layout
node0ip=127.0.0.1
node0port=8000
node1ip=127.0.0.1
node1port=8001
node2ip=127.0.0.1
node2port=8002
```

You can read the same file from code with `RpcConfig`. A missing key
gives an empty string. A missing file raises `FileNotFoundError`.

```python
from raftkv.config import RpcConfig

config = RpcConfig()
config.load_config_file("test.conf")
print(config.load("node0ip"), config.load("node0port"))
```

## Talking to a node from code

The package has no client (clerk) library that finds the leader or
retries for you. You can call a node directly with `RpcChannel`. The
key-value service is named `kvServerRpc` (`raftkv.kvserver.KV_SERVICE`),
and its methods are `PutAppend` and `Get`.

```python
from raftkv.channel import RpcChannel
from raftkv.controller import RpcController
from raftkv.messages import GetArgs, GetReply, PutAppendArgs, PutAppendReply

channel = RpcChannel("127.0.0.1", 8000, True)

controller = RpcController()
reply = channel.call_method(
    "kvServerRpc", "PutAppend", controller,
    PutAppendArgs(key="a", value="1", op="Put", client_id="c1", request_id=1),
    PutAppendReply,
)
if controller.failed:
    print("call failed:", controller.error_text)
else:
    print(reply.err)  # "OK" or "ErrWrongLeader"

controller = RpcController()
reply = channel.call_method(
    "kvServerRpc", "Get", controller,
    GetArgs(key="a", client_id="c1", request_id=2),
    GetReply,
)
channel.close()
```

The possible `err` values are `OK`, `ErrNoKey` and `ErrWrongLeader`. They
are available as `raftkv.kvserver.OK`, `ERR_NO_KEY` and
`ERR_WRONG_LEADER`.

## Wire format

A request is made of three parts, in this order:

1. a varint giving the length of the header;
2. an `RpcHeader`, which holds the service name, the method name and the
   size of the arguments;
3. the encoded arguments.

A reply is a varint length followed by the encoded response.

Messages use the protocol-buffer wire format. Each message defines its
own field numbers.

- `raftkv.wire` provides `frame_request`, `split_request`,
  `encode_varint` and `read_varint`.
- `raftkv.messages.Message` provides `serialize` and `parse`.
- Malformed input raises `WireError`.

## Library overview

| Module | What it provides |
| --- | --- |
| `raftkv.config` | `RpcConfig`, the `key=value` configuration reader |
| `raftkv.controller` | `RpcController`, which records whether a call failed and why, and supports cancel callbacks |
| `raftkv.wire` | `RpcHeader`, `WireError`, varint helpers, `frame_request` / `split_request` |
| `raftkv.messages` | `LogEntry` and the Raft and key-value messages (`AppendEntriesArgs`, `RequestVoteArgs`, `InstallSnapshotRequest`, `GetArgs`, `PutAppendArgs`, their replies), `AppState`, `VoteState` |
| `raftkv.channel` | `RpcChannel`, a persistent client connection that reconnects on failure |
| `raftkv.provider` | `RpcProvider` and `RpcMethod`: a threaded TCP server that dispatches requests to registered services |
| `raftkv.applymsg` | `ApplyMsg`, which carries committed commands and snapshots from Raft to the server |
| `raftkv.persister` | `Persister`, which stores Raft state and snapshots in files |
| `raftkv.raftlog` | `RaftLog` (the log after the last snapshot), `RaftPersistentState`, `RaftInvariantError` |
| `raftkv.raftrpc` | `RaftPeer`, the client side of the three Raft calls to one other node |
| `raftkv.raft` | `Raft` and `Status`: elections, replication and snapshots |
| `raftkv.ticker` | `RaftTicker` (the election, heartbeat and apply loops) and `randomized_election_timeout` |
| `raftkv.kvserver` | `Op`, `KvServer`, `start_kv_server` and the `main` entry point |

`RaftTicker` has these defaults: a 0.025 s heartbeat, an election timeout
between 0.3 s and 0.5 s, and a 0.01 s apply interval. `KvServer` waits
0.5 s for a request to commit (`consensus_timeout`).

## Persistence

Each node `me` keeps two files in the directory you give `Persister`:

- `raftstatePersist<me>.txt` holds the current term, the vote and the
  log, encoded as JSON.
- `snapshotPersist<me>.txt` holds the latest snapshot.

Both files are emptied when the persister is created. Every save
replaces the previous contents. The persister is a context manager:

```python
from raftkv.persister import Persister

with Persister(0, ".") as persister:
    persister.save_raft_state("state")
    print(persister.read_raft_state())
```

## Behaviour notes

- **Leadership.** Only the leader accepts requests. Any other node
  answers with `ErrWrongLeader`, so the client can try another node.
- **Append.** An `Append` stores the given value under the key in the
  same way a `Put` does. It replaces the old value; it does not add to
  it.
- **Duplicate requests.** A node does not apply a `Put` or `Append`
  whose request id is not greater than the last one it has seen from
  that client.
- **Timeouts.** A request that is not committed in time is answered with
  `ErrWrongLeader`, except in two cases:
  - a duplicate `PutAppend` gets `OK`;
  - a duplicate `Get` sent to a node that is still the leader is
    answered from the store.
- **Snapshots.** With `--max-raft-state` set to anything other than `-1`,
  the server checks the size of the saved Raft state. When that size
  grows past a tenth of the threshold, the server hands Raft a JSON
  snapshot of its store and its per-client request ids, and Raft
  discards its log up to the applied index.

## What it does not do

- The store is an in-memory dictionary. Its data survives a restart
  only through a snapshot, and there are no snapshots when
  `--max-raft-state` is `-1`.
- There is no client library that retries requests or finds the leader.
- Nodes find each other only through the node information file, after a
  fixed startup wait. Membership cannot change while the cluster runs.