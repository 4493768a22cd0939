import threading
import time
from queue import Queue

import pytest

from raftkv.messages import AppendEntriesReply, AppState
from raftkv.persister import Persister
from raftkv.raft import Raft, Status
from raftkv.ticker import RaftTicker, randomized_election_timeout


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class FakePeer:
    def __init__(self):
        self.calls = []
        self.called = threading.Event()

    def append_entries(self, args):
        self.calls.append(args)
        self.called.set()
        return AppendEntriesReply(term=args.term, success=True, app_state=AppState.APP_NORMAL)

    def request_vote(self, args):
        return None

    def install_snapshot(self, args):
        return None


@pytest.fixture
def persister(tmp_path):
    with Persister(0, tmp_path) as store:
        yield store


def make_raft(persister, peers=None):
    raft = Raft()
    raft.init(peers if peers is not None else [None], 0, persister, Queue())
    return raft


def test_randomized_timeout_within_bounds():
    for _ in range(50):
        value = randomized_election_timeout(0.1, 0.2)
        assert 0.1 <= value <= 0.2


def test_randomized_timeout_degenerate_range():
    assert randomized_election_timeout(0.3, 0.3) == 0.3


def test_randomized_timeout_rejects_inverted_range():
    with pytest.raises(ValueError):
        randomized_election_timeout(0.5, 0.1)


def test_constructor_rejects_bad_ranges(persister):
    raft = make_raft(persister)
    with pytest.raises(ValueError):
        RaftTicker(raft, 0.01, 0.5, 0.1, 0.01)
    with pytest.raises(ValueError):
        RaftTicker(raft, 0, 0.1, 0.2, 0.01)


def test_apply_once_delivers_committed_entries(persister):
    raft = make_raft(persister)
    raft.status = Status.LEADER
    index, _, is_leader = raft.start("cmd")
    assert is_leader
    raft.commit_index = index
    ticker = RaftTicker(raft, 0.01, 0.1, 0.2, 0.01)
    messages = ticker.apply_once()
    assert [m.command for m in messages] == ["cmd"]
    assert messages[0].command_index == index
    assert messages[0].command_valid
    queued = raft.apply_queue.get_nowait()
    assert queued == messages[0]
    assert ticker.apply_once() == []


def test_election_timer_starts_election(persister):
    raft = make_raft(persister)
    ticker = RaftTicker(raft, 0.005, 0.02, 0.04, 0.005)
    ticker.start()
    try:
        assert wait_until(lambda: raft.current_term >= 1)
    finally:
        ticker.stop()
    assert raft.status is Status.CANDIDATE
    assert raft.voted_for == 0
    assert not ticker.running


def test_heartbeat_timer_sends_append_entries(persister):
    peer1, peer2 = FakePeer(), FakePeer()
    raft = make_raft(persister, [None, peer1, peer2])
    raft.current_term = 1
    raft.status = Status.LEADER
    raft.next_index = [1, 1, 1]
    ticker = RaftTicker(raft, 0.01, 5.0, 5.0, 0.01)
    ticker.start()
    try:
        assert peer1.called.wait(3.0)
        assert peer2.called.wait(3.0)
    finally:
        ticker.stop()
    args = peer1.calls[0]
    assert args.leader_id == 0
    assert args.term == raft.current_term
    assert args.prev_log_index == 0
    assert args.entries == []


def test_applier_loop_fills_queue(persister):
    raft = make_raft(persister)
    raft.status = Status.LEADER
    index, _, _ = raft.start("payload")
    raft.commit_index = index
    ticker = RaftTicker(raft, 0.01, 5.0, 5.0, 0.005)
    ticker.start()
    try:
        message = raft.apply_queue.get(timeout=3.0)
    finally:
        ticker.stop()
    assert message.command == "payload"
    assert raft.last_applied == index


def test_start_twice_raises(persister):
    raft = make_raft(persister)
    ticker = RaftTicker(raft, 0.01, 5.0, 5.0, 0.01)
    ticker.start()
    try:
        with pytest.raises(RuntimeError):
            ticker.start()
    finally:
        ticker.stop()
    assert not ticker.running