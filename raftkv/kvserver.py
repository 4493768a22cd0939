"""A replicated key/value server built on a Raft node.

Clerks call ``Get`` and ``PutAppend``. Each request is handed to Raft and the
handler waits until Raft reports it committed at the log index it was given.
Committed writes are applied in log order, and a client's request is applied
at most once. Snapshots hold the key/value data and the last request id seen
from each client.
"""

from __future__ import annotations

import argparse
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from queue import Empty, Queue
from typing import Any, Sequence

from .applymsg import ApplyMsg
from .config import RpcConfig
from .messages import GetArgs, GetReply, PutAppendArgs, PutAppendReply
from .persister import Persister
from .provider import RpcMethod, RpcProvider
from .raft import Raft
from .raftrpc import RaftPeer
from .ticker import RaftTicker

_log = logging.getLogger(__name__)

OK = "OK"
ERR_NO_KEY = "ErrNoKey"
ERR_WRONG_LEADER = "ErrWrongLeader"

KV_SERVICE = "kvServerRpc"
PUT_APPEND = "PutAppend"
GET = "Get"

CONSENSUS_TIMEOUT = 0.5
_LOOP_POLL = 0.1
_STARTUP_WAIT = 6


@dataclass
class Op:
    """A clerk's request as it travels through the Raft log."""

    operation: str = ""
    key: str = ""
    value: str = ""
    client_id: str = ""
    request_id: int = 0

    def serialize(self) -> str:
        """Encode the operation as text for a log entry."""
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def parse(cls, data: str) -> Op:
        """Decode text made by :meth:`serialize`; raise ``ValueError`` if malformed."""
        document = json.loads(data)
        if not isinstance(document, dict):
            raise ValueError("operation must be an object")
        values: dict[str, Any] = {}
        for name in ("operation", "key", "value", "client_id"):
            item = document.get(name, "")
            if not isinstance(item, str):
                raise ValueError(f"field {name!r} must be a string")
            values[name] = item
        request_id = document.get("request_id", 0)
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            raise ValueError("field 'request_id' must be an integer")
        return cls(request_id=request_id, **values)


class KvServer:
    """The state machine on top of one Raft node."""

    def __init__(
        self,
        me: int,
        max_raft_state: int,
        raft: Raft,
        apply_queue: Queue[ApplyMsg],
        persister: Persister,
        consensus_timeout: float = CONSENSUS_TIMEOUT,
    ) -> None:
        self.me = me
        self.max_raft_state = max_raft_state
        self.raft = raft
        self.apply_queue = apply_queue
        self.consensus_timeout = consensus_timeout
        self._lock = threading.RLock()
        self._store: dict[str, str] = {}
        self._wait_chans: dict[int, Queue[Op]] = {}
        self._last_request_id: dict[str, int] = {}
        self.last_snapshot_raft_log_index = 0
        self._stopped = threading.Event()
        snapshot = persister.read_snapshot()
        if snapshot:
            self.read_snapshot_to_install(snapshot)

    def rpc_methods(self) -> list[RpcMethod]:
        """The calls this server serves to clerks."""
        return [
            RpcMethod(KV_SERVICE, PUT_APPEND, PutAppendArgs, PutAppendReply, self.put_append),
            RpcMethod(KV_SERVICE, GET, GetArgs, GetReply, self.get),
        ]

    # ----------------------------------------------------------- state machine

    def dump(self) -> dict[str, str]:
        """The stored keys and values in key order."""
        with self._lock:
            contents = dict(sorted(self._store.items()))
        _log.debug("[DBInfo] %s", contents)
        return contents

    def execute_put(self, op: Op) -> None:
        """Store ``op.value`` under ``op.key``."""
        with self._lock:
            self._store[op.key] = op.value
            self._last_request_id[op.client_id] = op.request_id
        self.dump()

    def execute_append(self, op: Op) -> None:
        """Apply an append; the store sets the key to ``op.value`` as a put does."""
        with self._lock:
            self._store[op.key] = op.value
            self._last_request_id[op.client_id] = op.request_id
        self.dump()

    def execute_get(self, op: Op) -> tuple[str, bool]:
        """Look up ``op.key``; return its value (or ``""``) and whether it exists."""
        with self._lock:
            exists = op.key in self._store
            value = self._store.get(op.key, "")
            self._last_request_id[op.client_id] = op.request_id
        self.dump()
        return value, exists

    def if_request_duplicate(self, client_id: str, request_id: int) -> bool:
        """Tell whether the client's request has already been applied."""
        with self._lock:
            last = self._last_request_id.get(client_id)
            return last is not None and request_id <= last

    # ------------------------------------------------------------ clerk calls

    def _wait_for_commit(self, op: Op) -> tuple[int, Op | None] | None:
        """Hand ``op`` to Raft and wait for it to commit.

        Returns ``None`` if this node is not the leader, otherwise the log
        index and the operation committed there (``None`` on timeout).
        """
        raft_index, _term, is_leader = self.raft.start(op)
        if not is_leader:
            return None
        with self._lock:
            channel = self._wait_chans.setdefault(raft_index, Queue())
        try:
            committed = channel.get(timeout=self.consensus_timeout)
        except Empty:
            committed = None
        return raft_index, committed

    def _release(self, raft_index: int) -> None:
        with self._lock:
            self._wait_chans.pop(raft_index, None)

    def _reply_for_get(self, op: Op) -> GetReply:
        value, exists = self.execute_get(op)
        if exists:
            return GetReply(err=OK, value=value)
        return GetReply(err=ERR_NO_KEY, value="")

    def get(self, args: GetArgs) -> GetReply:
        """Handle a clerk's read once Raft has committed it."""
        op = Op(GET, args.key, "", args.client_id, args.request_id)
        outcome = self._wait_for_commit(op)
        if outcome is None:
            return GetReply(err=ERR_WRONG_LEADER)
        raft_index, committed = outcome
        try:
            if committed is None:
                _term, is_leader = self.raft.get_state()
                if self.if_request_duplicate(op.client_id, op.request_id) and is_leader:
                    return self._reply_for_get(op)
                return GetReply(err=ERR_WRONG_LEADER)
            if committed.client_id == op.client_id and committed.request_id == op.request_id:
                return self._reply_for_get(op)
            return GetReply(err=ERR_WRONG_LEADER)
        finally:
            self._release(raft_index)

    def put_append(self, args: PutAppendArgs) -> PutAppendReply:
        """Handle a clerk's write once Raft has committed it."""
        op = Op(args.op, args.key, args.value, args.client_id, args.request_id)
        outcome = self._wait_for_commit(op)
        if outcome is None:
            _log.debug(
                "[PutAppend-kv%d] client %s request %d: not leader",
                self.me, args.client_id, args.request_id,
            )
            return PutAppendReply(err=ERR_WRONG_LEADER)
        raft_index, committed = outcome
        try:
            if committed is None:
                _log.debug("[PutAppend-kv%d] timeout at index %d", self.me, raft_index)
                if self.if_request_duplicate(op.client_id, op.request_id):
                    return PutAppendReply(err=OK)
                return PutAppendReply(err=ERR_WRONG_LEADER)
            if committed.client_id == op.client_id and committed.request_id == op.request_id:
                return PutAppendReply(err=OK)
            return PutAppendReply(err=ERR_WRONG_LEADER)
        finally:
            self._release(raft_index)

    # --------------------------------------------------------- from Raft below

    def get_command_from_raft(self, message: ApplyMsg) -> None:
        """Apply one committed command and wake the handler waiting for it."""
        op = Op.parse(message.command)
        _log.debug(
            "[GetCommandFromRaft-kv%d] index %d client %s request %d %s key %r",
            self.me, message.command_index, op.client_id, op.request_id, op.operation, op.key,
        )
        if message.command_index <= self.last_snapshot_raft_log_index:
            return
        if not self.if_request_duplicate(op.client_id, op.request_id):
            if op.operation == "Put":
                self.execute_put(op)
            if op.operation == "Append":
                self.execute_append(op)
        if self.max_raft_state != -1:
            self.if_need_to_send_snapshot_command(message.command_index, 9)
        self.send_message_to_wait_chan(op, message.command_index)

    def send_message_to_wait_chan(self, op: Op, raft_index: int) -> bool:
        """Pass ``op`` to the handler waiting on ``raft_index``, if there is one."""
        with self._lock:
            channel = self._wait_chans.get(raft_index)
            if channel is None:
                return False
            channel.put(op)
            return True

    def if_need_to_send_snapshot_command(self, raft_index: int, proportion: int) -> None:
        """Ask Raft to compact its log when its saved state has grown too large."""
        if self.raft.get_raft_state_size() > self.max_raft_state / 10.0:
            self.raft.snapshot(raft_index, self.make_snapshot())

    def get_snapshot_from_raft(self, message: ApplyMsg) -> None:
        """Install a snapshot that Raft received from the leader."""
        with self._lock:
            if self.raft.cond_install_snapshot(
                message.snapshot_term, message.snapshot_index, message.snapshot
            ):
                self.read_snapshot_to_install(message.snapshot)
                self.last_snapshot_raft_log_index = message.snapshot_index

    def read_raft_apply_command_loop(self) -> None:
        """Consume the apply queue until :meth:`stop` is called."""
        while not self._stopped.is_set():
            try:
                message = self.apply_queue.get(timeout=_LOOP_POLL)
            except Empty:
                continue
            if message.command_valid:
                self.get_command_from_raft(message)
            if message.snapshot_valid:
                self.get_snapshot_from_raft(message)

    def stop(self) -> None:
        """Make :meth:`read_raft_apply_command_loop` return."""
        self._stopped.set()

    # ---------------------------------------------------------------- snapshot

    def make_snapshot(self) -> str:
        """Encode the stored data and per-client request ids."""
        with self._lock:
            return json.dumps(
                {
                    "kv": dict(sorted(self._store.items())),
                    "last_request_id": dict(self._last_request_id),
                },
                separators=(",", ":"),
            )

    def read_snapshot_to_install(self, snapshot: str) -> None:
        """Replace the state with a snapshot from :meth:`make_snapshot`.

        An empty snapshot is ignored; a malformed one raises ``ValueError``.
        """
        if not snapshot:
            return
        document = json.loads(snapshot)
        if not isinstance(document, dict):
            raise ValueError("snapshot must be an object")
        store = document.get("kv", {})
        requests = document.get("last_request_id", {})
        if not isinstance(store, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in store.items()
        ):
            raise ValueError("snapshot 'kv' must map strings to strings")
        if not isinstance(requests, dict) or not all(
            isinstance(v, int) and not isinstance(v, bool) for v in requests.values()
        ):
            raise ValueError("snapshot 'last_request_id' must map strings to integers")
        with self._lock:
            self._store = dict(store)
            self._last_request_id = dict(requests)


def _atoi(text: str) -> int:
    digits = ""
    for char in text.strip():
        if char.isdigit() or (not digits and char in "+-"):
            digits += char
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return 0


def start_kv_server(me: int, max_raft_state: int, node_info_file: str, port: int) -> None:
    """Run node ``me`` of the cluster listed in ``node_info_file``; never returns."""
    persister = Persister(me, ".")
    apply_queue: Queue[ApplyMsg] = Queue()
    raft = Raft()
    server = KvServer(me, max_raft_state, raft, apply_queue, persister)

    provider = RpcProvider()
    provider.notify_service(server)
    provider.notify_service(raft)
    threading.Thread(target=provider.run, args=(me, port), daemon=True).start()

    _log.info("raftServer node:%d start to sleep to wait all other raftnode start", me)
    time.sleep(_STARTUP_WAIT)
    _log.info("raftServer node:%d wake up, start to connect other raftnode", me)

    config = RpcConfig()
    config.load_config_file(node_info_file)
    addresses: list[tuple[str, int]] = []
    while True:
        node = f"node{len(addresses)}"
        ip = config.load(node + "ip")
        if not ip:
            break
        addresses.append((ip, _atoi(config.load(node + "port"))))

    peers: list[RaftPeer | None] = []
    for index, (ip, peer_port) in enumerate(addresses):
        if index == me:
            peers.append(None)
            continue
        peers.append(RaftPeer(ip, peer_port))
        _log.info("node%d connected to node%d", me, index)

    time.sleep(max(len(addresses) - me, 0))
    raft.init(peers, me, persister, apply_queue)
    RaftTicker(raft).start()
    server.read_raft_apply_command_loop()


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry point: start one key/value server node."""
    parser = argparse.ArgumentParser(prog="raftkv", description="Run a replicated key/value node.")
    parser.add_argument("node_info_file", help="file listing nodeNip/nodeNport entries")
    parser.add_argument("me", type=int, help="index of this node")
    parser.add_argument("port", type=int, help="port to serve on")
    parser.add_argument(
        "--max-raft-state", type=int, default=-1,
        help="snapshot threshold for the Raft state size; -1 disables snapshots",
    )
    options = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        start_kv_server(options.me, options.max_raft_state, options.node_info_file, options.port)
    except FileNotFoundError:
        _log.error("%s is not exist!", options.node_info_file)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0