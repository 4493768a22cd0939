"""A Raft consensus node: elections, log replication and snapshots.

Peers are objects with ``append_entries``, ``request_vote`` and
``install_snapshot`` methods that return the peer's reply, or ``None`` when
the network failed (see :class:`raftkv.raftrpc.RaftPeer`). The node's own
slot in the peer list is ``None``. Committed commands and installed
snapshots are delivered as :class:`raftkv.applymsg.ApplyMsg` objects on the
apply queue.

The periodic timers that trigger elections, heartbeats and applying are
driven from outside through :meth:`Raft.do_election`,
:meth:`Raft.do_heartbeat` and :meth:`Raft.get_apply_logs`.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from queue import Queue
from typing import Any, Callable, Sequence

from .applymsg import ApplyMsg
from .messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    AppState,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
    VoteState,
)
from .persister import Persister
from .provider import RpcMethod
from .raftlog import RaftInvariantError, RaftLog, RaftPersistentState
from .raftrpc import APPEND_ENTRIES, INSTALL_SNAPSHOT, RAFT_SERVICE, REQUEST_VOTE

_log = logging.getLogger(__name__)

# Sent back when the leader's term is stale, so it does not touch nextIndex.
_STALE_TERM_NEXT_INDEX = -100


class Status(Enum):
    """The role a node currently plays."""

    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


class _Tally:
    """A counter shared by the replies of one election or one heartbeat round."""

    def __init__(self, count: int = 1) -> None:
        self.count = count


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise RaftInvariantError(message)


def _command_text(command: Any) -> str:
    if isinstance(command, str):
        return command
    return command.serialize()


class Raft:
    """One member of a Raft cluster."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.peers: list[Any] = []
        self.persister: Persister | None = None
        self.me = 0
        self.apply_queue: Queue[ApplyMsg] = Queue()
        self.current_term = 0
        self.voted_for = -1
        self.log = RaftLog()
        self.commit_index = 0
        self.last_applied = 0
        self.next_index: list[int] = []
        self.match_index: list[int] = []
        self.status = Status.FOLLOWER
        self.last_reset_election_time = time.monotonic()
        self.last_reset_heartbeat_time = time.monotonic()

    def init(
        self,
        peers: Sequence[Any],
        me: int,
        persister: Persister,
        apply_queue: Queue[ApplyMsg],
    ) -> None:
        """Set up the node and restore whatever state ``persister`` holds."""
        with self._lock:
            self.peers = list(peers)
            self.persister = persister
            self.me = me
            self.apply_queue = apply_queue
            self.current_term = 0
            self.status = Status.FOLLOWER
            self.commit_index = 0
            self.last_applied = 0
            self.log = RaftLog()
            self.match_index = [0] * len(self.peers)
            self.next_index = [0] * len(self.peers)
            self.voted_for = -1
            self.last_reset_election_time = time.monotonic()
            self.last_reset_heartbeat_time = time.monotonic()
            self.read_persist(persister.read_raft_state())
            if self.log.snapshot_index > 0:
                self.last_applied = self.log.snapshot_index
            _log.debug(
                "[Init] server %d, term %d, snapshot index %d, snapshot term %d",
                self.me,
                self.current_term,
                self.log.snapshot_index,
                self.log.snapshot_term,
            )

    def rpc_methods(self) -> list[RpcMethod]:
        """The calls this node serves to its peers."""
        return [
            RpcMethod(RAFT_SERVICE, APPEND_ENTRIES, AppendEntriesArgs, AppendEntriesReply,
                      self.append_entries),
            RpcMethod(RAFT_SERVICE, INSTALL_SNAPSHOT, InstallSnapshotRequest,
                      InstallSnapshotResponse, self.install_snapshot),
            RpcMethod(RAFT_SERVICE, REQUEST_VOTE, RequestVoteArgs, RequestVoteReply,
                      self.request_vote),
        ]

    # ----------------------------------------------------------------- helpers

    def _spawn(self, target: Callable[..., Any], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        return thread

    def _step_down(self, term: int) -> None:
        self.status = Status.FOLLOWER
        self.current_term = term
        self.voted_for = -1

    # ------------------------------------------------------------ incoming RPC

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        """Handle a heartbeat or log replication request from a leader."""
        with self._lock:
            reply = AppendEntriesReply(app_state=AppState.APP_NORMAL)
            if args.term < self.current_term:
                reply.success = False
                reply.term = self.current_term
                reply.update_next_index = _STALE_TERM_NEXT_INDEX
                _log.debug(
                    "[AppendEntries-rf%d] rejected leader %d: term %d < %d",
                    self.me, args.leader_id, args.term, self.current_term,
                )
                return reply
            try:
                return self._accept_entries(args, reply)
            finally:
                self.persist()

    def _accept_entries(
        self, args: AppendEntriesArgs, reply: AppendEntriesReply
    ) -> AppendEntriesReply:
        if args.term > self.current_term:
            self._step_down(args.term)
        self.status = Status.FOLLOWER
        self.last_reset_election_time = time.monotonic()

        last_index = self.log.last_index()
        if args.prev_log_index > last_index:
            reply.success = False
            reply.term = self.current_term
            reply.update_next_index = last_index + 1
            return reply
        if args.prev_log_index < self.log.snapshot_index:
            reply.success = False
            reply.term = self.current_term
            reply.update_next_index = self.log.snapshot_index + 1
            return reply

        if self.log.match(args.prev_log_index, args.prev_log_term):
            for entry in args.entries:
                if entry.log_index > self.log.last_index():
                    self.log.entries.append(entry)
                    continue
                position = self.log.slice_index(entry.log_index)
                existing = self.log.entries[position]
                if existing.log_term == entry.log_term and existing.command != entry.command:
                    raise RaftInvariantError(
                        f"[AppendEntries-rf{self.me}] index {entry.log_index} and term "
                        f"{entry.log_term} match but commands differ: "
                        f"{existing.command!r} vs {entry.command!r} from {args.leader_id}"
                    )
                if existing.log_term != entry.log_term:
                    self.log.entries[position] = entry
            _require(
                self.log.last_index() >= args.prev_log_index + len(args.entries),
                f"[AppendEntries-rf{self.me}] last index {self.log.last_index()} < "
                f"{args.prev_log_index} + {len(args.entries)}",
            )
            if args.leader_commit > self.commit_index:
                self.commit_index = min(args.leader_commit, self.log.last_index())
            _require(
                self.log.last_index() >= self.commit_index,
                f"[AppendEntries-rf{self.me}] last index {self.log.last_index()} < "
                f"commit index {self.commit_index}",
            )
            reply.success = True
            reply.term = self.current_term
            return reply

        reply.update_next_index = args.prev_log_index
        conflict_term = self.log.term_at(args.prev_log_index)
        for index in range(args.prev_log_index, self.log.snapshot_index - 1, -1):
            if self.log.term_at(index) != conflict_term:
                reply.update_next_index = index + 1
                break
        reply.success = False
        reply.term = self.current_term
        return reply

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Decide whether to grant a candidate this node's vote."""
        with self._lock:
            try:
                return self._decide_vote(args)
            finally:
                self.persist()

    def _decide_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        if args.term < self.current_term:
            return RequestVoteReply(
                term=self.current_term, vote_state=VoteState.EXPIRE, vote_granted=False
            )
        if args.term > self.current_term:
            self._step_down(args.term)
        _require(args.term == self.current_term, f"[RequestVote-rf{self.me}] term mismatch")
        if not self.log.up_to_date(args.last_log_index, args.last_log_term):
            return RequestVoteReply(
                term=self.current_term, vote_state=VoteState.VOTED, vote_granted=False
            )
        if self.voted_for != -1 and self.voted_for != args.candidate_id:
            return RequestVoteReply(
                term=self.current_term, vote_state=VoteState.VOTED, vote_granted=False
            )
        self.voted_for = args.candidate_id
        self.last_reset_election_time = time.monotonic()
        return RequestVoteReply(
            term=self.current_term, vote_state=VoteState.NORMAL, vote_granted=True
        )

    def install_snapshot(self, args: InstallSnapshotRequest) -> InstallSnapshotResponse:
        """Adopt a snapshot sent by the leader and hand it to the service."""
        with self._lock:
            reply = InstallSnapshotResponse(term=self.current_term)
            if args.term < self.current_term:
                return reply
            if args.term > self.current_term:
                self._step_down(args.term)
                self.persist()
            self.status = Status.FOLLOWER
            self.last_reset_election_time = time.monotonic()
            reply.term = self.current_term
            index = args.last_snapshot_include_index
            if index <= self.log.snapshot_index:
                return reply
            self.log.discard_through(index, args.last_snapshot_include_term)
            self.commit_index = max(self.commit_index, index)
            self.last_applied = max(self.last_applied, index)
            self.apply_queue.put(
                ApplyMsg(
                    snapshot_valid=True,
                    snapshot=args.data,
                    snapshot_term=args.last_snapshot_include_term,
                    snapshot_index=index,
                )
            )
            self.persister.save(self.persist_data(), args.data)
            return reply

    # ---------------------------------------------------------- service facing

    def get_state(self) -> tuple[int, bool]:
        """The current term and whether this node believes it is the leader."""
        with self._lock:
            return self.current_term, self.status is Status.LEADER

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Append ``command`` to the log if leader.

        Returns the index and term it was given and whether this node is the
        leader; ``(-1, -1, False)`` when it is not.
        """
        with self._lock:
            if self.status is not Status.LEADER:
                return -1, -1, False
            entry = LogEntry(
                command=_command_text(command),
                log_term=self.current_term,
                log_index=self.log.new_command_index(),
            )
            self.log.entries.append(entry)
            _log.debug("[Start-rf%d] last index %d", self.me, self.log.last_index())
            self.persist()
            return entry.log_index, entry.log_term, True

    def snapshot(self, index: int, snapshot: str) -> None:
        """Discard the log through ``index``, which ``snapshot`` now covers."""
        with self._lock:
            if self.log.snapshot_index >= index or index > self.commit_index:
                _log.debug(
                    "[Snapshot-rf%d] rejected index %d, current snapshot index %d",
                    self.me, index, self.log.snapshot_index,
                )
                return
            self.log.compact_to(index)
            self.commit_index = max(self.commit_index, index)
            self.last_applied = max(self.last_applied, index)
            self.persister.save(self.persist_data(), snapshot)

    def cond_install_snapshot(
        self, last_included_term: int, last_included_index: int, snapshot: str
    ) -> bool:
        """Tell whether the service may install a snapshot.

        Every snapshot delivered by this node was accepted in a term no later
        than the current one, so the answer is always true in practice.
        """
        with self._lock:
            accepted = last_included_term <= self.current_term or True
            _log.debug(
                "[CondInstallSnapshot-rf%d] snapshot term %d index %d (%d bytes), "
                "current term %d, commit index %d: %s",
                self.me,
                last_included_term,
                last_included_index,
                len(snapshot),
                self.current_term,
                self.commit_index,
                "accepted" if accepted else "rejected",
            )
            return accepted

    def get_apply_logs(self) -> list[ApplyMsg]:
        """Messages for the entries committed since the last call."""
        with self._lock:
            _require(
                self.commit_index <= self.log.last_index(),
                f"[getApplyLogs-rf{self.me}] commit index {self.commit_index} > "
                f"last index {self.log.last_index()}",
            )
            messages = []
            while self.last_applied < self.commit_index:
                self.last_applied += 1
                entry = self.log.entry(self.last_applied)
                _require(
                    entry.log_index == self.last_applied,
                    f"entry index {entry.log_index} != last applied {self.last_applied}",
                )
                messages.append(
                    ApplyMsg(
                        command_valid=True,
                        snapshot_valid=False,
                        command=entry.command,
                        command_index=self.last_applied,
                    )
                )
            return messages

    # ------------------------------------------------------------ leader side

    def prev_log_info(self, server: int) -> tuple[int, int]:
        """Index and term of the entry just before what ``server`` needs next."""
        with self._lock:
            if self.next_index[server] == self.log.snapshot_index + 1:
                return self.log.snapshot_index, self.log.snapshot_term
            prev_index = self.next_index[server] - 1
            return prev_index, self.log.entry(prev_index).log_term

    def do_election(self) -> list[threading.Thread]:
        """Become a candidate and ask every peer for a vote.

        Returns the threads sending the requests; none if already leader.
        """
        with self._lock:
            if self.status is Status.LEADER:
                return []
            _log.debug("[election-rf%d] election timer expired, starting election", self.me)
            self.status = Status.CANDIDATE
            self.current_term += 1
            self.voted_for = self.me
            self.persist()
            voted = _Tally(1)
            self.last_reset_election_time = time.monotonic()
            threads = []
            for server in range(len(self.peers)):
                if server == self.me:
                    continue
                last_index, last_term = self.log.last_index_and_term()
                args = RequestVoteArgs(
                    term=self.current_term,
                    candidate_id=self.me,
                    last_log_index=last_index,
                    last_log_term=last_term,
                )
                threads.append(self._spawn(self.send_request_vote, server, args, voted))
            return threads

    def do_heartbeat(self) -> list[threading.Thread]:
        """Send log entries (or a snapshot) to every follower, if leader.

        Returns the threads doing the sending.
        """
        with self._lock:
            if self.status is not Status.LEADER:
                return []
            append_nums = _Tally(1)
            threads = []
            for server in range(len(self.peers)):
                if server == self.me:
                    continue
                _require(
                    self.next_index[server] >= 1,
                    f"next_index[{server}] = {self.next_index[server]}",
                )
                if self.next_index[server] <= self.log.snapshot_index:
                    threads.append(self._spawn(self.leader_send_snapshot, server))
                    continue
                prev_index, prev_term = self.prev_log_info(server)
                args = AppendEntriesArgs(
                    term=self.current_term,
                    leader_id=self.me,
                    prev_log_index=prev_index,
                    prev_log_term=prev_term,
                    entries=self.log.entries_after(prev_index),
                    leader_commit=self.commit_index,
                )
                last_index = self.log.last_index()
                _require(
                    args.prev_log_index + len(args.entries) == last_index,
                    f"prev index {args.prev_log_index} + {len(args.entries)} entries "
                    f"!= last index {last_index}",
                )
                threads.append(
                    self._spawn(self.send_append_entries, server, args, append_nums)
                )
            self.last_reset_heartbeat_time = time.monotonic()
            return threads

    def send_request_vote(self, server: int, args: RequestVoteArgs, voted: Any) -> bool:
        """Ask ``server`` for a vote and count it in ``voted.count``.

        Returns false only when the network failed.
        """
        reply = self.peers[server].request_vote(args)
        if reply is None:
            return False
        with self._lock:
            if reply.term > self.current_term:
                self._step_down(reply.term)
                self.persist()
                return True
            if reply.term < self.current_term:
                return True
            if not reply.vote_granted:
                return True
            voted.count += 1
            if voted.count >= len(self.peers) // 2 + 1:
                voted.count = 0
                _require(
                    self.status is not Status.LEADER,
                    f"[sendRequestVote-rf{self.me}] term {self.current_term}: "
                    "elected leader twice in one term",
                )
                self.status = Status.LEADER
                last_index = self.log.last_index()
                _log.debug(
                    "[sendRequestVote-rf%d] elected, term %d, last index %d",
                    self.me, self.current_term, last_index,
                )
                self.next_index = [last_index + 1] * len(self.next_index)
                self.match_index = [0] * len(self.match_index)
                self._spawn(self.do_heartbeat)
                self.persist()
            return True

    def send_append_entries(
        self, server: int, args: AppendEntriesArgs, append_nums: Any
    ) -> bool:
        """Send ``args`` to ``server`` and act on its reply.

        Successful replies are counted in ``append_nums.count``. Returns false
        only when the network failed.
        """
        reply = self.peers[server].append_entries(args)
        if reply is None:
            _log.debug("[sendAppendEntries-rf%d] AE to %d failed", self.me, server)
            return False
        if reply.app_state == AppState.DISCONNECTED:
            return True
        with self._lock:
            if reply.term > self.current_term:
                self._step_down(reply.term)
                self.persist()
                return True
            if reply.term < self.current_term:
                return True
            if self.status is not Status.LEADER:
                return True
            if not reply.success:
                if reply.update_next_index != _STALE_TERM_NEXT_INDEX:
                    self.next_index[server] = reply.update_next_index
                return True
            append_nums.count += 1
            replicated = args.prev_log_index + len(args.entries)
            self.match_index[server] = max(self.match_index[server], replicated)
            self.next_index[server] = self.match_index[server] + 1
            last_index = self.log.last_index()
            _require(
                self.next_index[server] <= last_index + 1,
                f"next_index[{server}] {self.next_index[server]} > last index + 1 "
                f"({last_index + 1})",
            )
            if append_nums.count >= 1 + len(self.peers) // 2:
                append_nums.count = 0
                if args.entries and args.entries[-1].log_term == self.current_term:
                    self.commit_index = max(self.commit_index, replicated)
                _require(
                    self.commit_index <= last_index,
                    f"[sendAppendEntries-rf{self.me}] commit index {self.commit_index} "
                    f"> last index {last_index}",
                )
            return True

    def leader_send_snapshot(self, server: int) -> None:
        """Send the current snapshot to ``server``."""
        with self._lock:
            args = InstallSnapshotRequest(
                leader_id=self.me,
                term=self.current_term,
                last_snapshot_include_index=self.log.snapshot_index,
                last_snapshot_include_term=self.log.snapshot_term,
                data=self.persister.read_snapshot(),
            )
        reply = self.peers[server].install_snapshot(args)
        with self._lock:
            if reply is None:
                return
            if self.status is not Status.LEADER or self.current_term != args.term:
                return
            if reply.term > self.current_term:
                self._step_down(reply.term)
                self.persist()
                self.last_reset_election_time = time.monotonic()
                return
            self.match_index[server] = args.last_snapshot_include_index
            self.next_index[server] = self.match_index[server] + 1

    def leader_update_commit_index(self) -> None:
        """Advance the commit index to the newest current-term entry on a majority."""
        with self._lock:
            self.commit_index = self.log.snapshot_index
            majority = len(self.peers) // 2 + 1
            for index in range(self.log.last_index(), self.log.snapshot_index, -1):
                replicas = sum(
                    1
                    for server in range(len(self.peers))
                    if server == self.me or self.match_index[server] >= index
                )
                if replicas >= majority and self.log.term_at(index) == self.current_term:
                    self.commit_index = index
                    break

    # ------------------------------------------------------------- persistence

    def persist(self) -> None:
        """Save the term, vote and log to the persister."""
        with self._lock:
            self.persister.save_raft_state(self.persist_data())

    def persist_data(self) -> str:
        """The term, vote and log encoded for storage."""
        with self._lock:
            return RaftPersistentState(
                current_term=self.current_term,
                voted_for=self.voted_for,
                last_snapshot_include_index=self.log.snapshot_index,
                last_snapshot_include_term=self.log.snapshot_term,
                logs=list(self.log.entries),
            ).serialize()

    def read_persist(self, data: str) -> None:
        """Restore state saved by :meth:`persist_data`; empty data is ignored."""
        if not data:
            return
        state = RaftPersistentState.parse(data)
        with self._lock:
            self.current_term = state.current_term
            self.voted_for = state.voted_for
            self.log = RaftLog(
                entries=list(state.logs),
                snapshot_index=state.last_snapshot_include_index,
                snapshot_term=state.last_snapshot_include_term,
            )

    def get_raft_state_size(self) -> int:
        """Size in bytes of the last saved Raft state."""
        return self.persister.raft_state_size()