"""Outgoing calls from one Raft node to one of its peers."""

from __future__ import annotations

import logging
from typing import TypeVar

from .channel import RpcChannel
from .controller import RpcController
from .messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    Message,
    RequestVoteArgs,
    RequestVoteReply,
)

_log = logging.getLogger(__name__)

RAFT_SERVICE = "raftRpc"
APPEND_ENTRIES = "AppendEntries"
INSTALL_SNAPSHOT = "InstallSnapshot"
REQUEST_VOTE = "RequestVote"

R = TypeVar("R", bound=Message)


class RaftPeer:
    """A connection to another Raft node for sending it the three Raft calls.

    Each call returns the peer's reply, or ``None`` when the network failed.
    """

    def __init__(self, ip: str, port: int) -> None:
        self.ip = ip
        self.port = port
        self._channel = RpcChannel(ip, port, True)

    def _call(self, method: str, request: Message, response_type: type[R]) -> R | None:
        controller = RpcController()
        reply = self._channel.call_method(
            RAFT_SERVICE, method, controller, request, response_type
        )
        if controller.failed:
            _log.debug("%s to %s:%s failed: %s", method, self.ip, self.port, controller.error_text)
            return None
        return reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply | None:
        """Send a heartbeat or log entries."""
        return self._call(APPEND_ENTRIES, args, AppendEntriesReply)

    def install_snapshot(self, args: InstallSnapshotRequest) -> InstallSnapshotResponse | None:
        """Send a snapshot to a lagging follower."""
        return self._call(INSTALL_SNAPSHOT, args, InstallSnapshotResponse)

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply | None:
        """Ask the peer for its vote."""
        return self._call(REQUEST_VOTE, args, RequestVoteReply)

    def close(self) -> None:
        """Close the connection; the next call reconnects."""
        self._channel.close()