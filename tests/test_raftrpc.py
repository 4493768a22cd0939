import socket
import threading

import pytest

from raftkv.messages import (
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
from raftkv.provider import RpcMethod, RpcProvider
from raftkv.raftrpc import (
    APPEND_ENTRIES,
    INSTALL_SNAPSHOT,
    RAFT_SERVICE,
    REQUEST_VOTE,
    RaftPeer,
)


class _FakeRaft:
    def __init__(self):
        self.received = []

    def _append(self, args):
        self.received.append(args)
        return AppendEntriesReply(
            term=args.term,
            success=True,
            update_next_index=args.prev_log_index,
            app_state=AppState.APP_NORMAL,
        )

    def _vote(self, args):
        self.received.append(args)
        return RequestVoteReply(
            term=args.term, vote_granted=args.candidate_id == 2, vote_state=VoteState.NORMAL
        )

    def _snapshot(self, args):
        self.received.append(args)
        return InstallSnapshotResponse(term=args.term)

    def rpc_methods(self):
        return [
            RpcMethod(RAFT_SERVICE, APPEND_ENTRIES, AppendEntriesArgs, AppendEntriesReply, self._append),
            RpcMethod(RAFT_SERVICE, REQUEST_VOTE, RequestVoteArgs, RequestVoteReply, self._vote),
            RpcMethod(
                RAFT_SERVICE, INSTALL_SNAPSHOT, InstallSnapshotRequest, InstallSnapshotResponse,
                self._snapshot,
            ),
        ]


@pytest.fixture
def server(tmp_path):
    service = _FakeRaft()
    provider = RpcProvider()
    provider.notify_service(service)
    thread = threading.Thread(
        target=provider.run,
        args=(0, 0, "127.0.0.1", tmp_path / "test.conf"),
        daemon=True,
    )
    thread.start()
    assert provider.ready.wait(5)
    yield service, provider.address[1]
    provider.stop()
    thread.join(5)


@pytest.fixture
def peer(server):
    _, port = server
    connection = RaftPeer("127.0.0.1", port)
    yield connection
    connection.close()


def test_append_entries_round_trip(server, peer):
    service, _ = server
    args = AppendEntriesArgs(
        term=3,
        leader_id=1,
        prev_log_index=4,
        prev_log_term=2,
        entries=[LogEntry(command="put k v", log_term=3, log_index=5)],
        leader_commit=4,
    )
    reply = peer.append_entries(args)
    assert reply.term == args.term
    assert reply.success is True
    assert reply.update_next_index == args.prev_log_index
    assert reply.app_state == AppState.APP_NORMAL
    assert service.received == [args]


def test_request_vote(server, peer):
    service, _ = server
    granted = peer.request_vote(RequestVoteArgs(term=7, candidate_id=2, last_log_index=3, last_log_term=1))
    refused = peer.request_vote(RequestVoteArgs(term=7, candidate_id=1))
    assert granted.vote_granted is True
    assert refused.vote_granted is False
    assert granted.vote_state == VoteState.NORMAL
    assert [a.candidate_id for a in service.received] == [2, 1]


def test_install_snapshot(server, peer):
    service, _ = server
    args = InstallSnapshotRequest(
        leader_id=0, term=5, last_snapshot_include_index=10, last_snapshot_include_term=4, data="state"
    )
    reply = peer.install_snapshot(args)
    assert reply.term == args.term
    assert service.received == [args]


def test_call_after_close_reconnects(peer):
    peer.close()
    reply = peer.request_vote(RequestVoteArgs(term=9, candidate_id=2))
    assert reply.term == 9


def test_unreachable_peer_returns_none():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    unreachable = RaftPeer("127.0.0.1", port)
    try:
        assert unreachable.request_vote(RequestVoteArgs(term=1)) is None
        assert unreachable.append_entries(AppendEntriesArgs(term=1)) is None
    finally:
        unreachable.close()