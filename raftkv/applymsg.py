"""Messages that a Raft node delivers to the service above it."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ApplyMsg:
    """Either a committed command or an installed snapshot.

    ``command_valid`` and ``snapshot_valid`` say which part is meaningful;
    both start out false and indices and terms start at -1.
    """

    command_valid: bool = False
    command: str = ""
    command_index: int = -1
    snapshot_valid: bool = False
    snapshot: str = ""
    snapshot_term: int = -1
    snapshot_index: int = -1