"""The replicated log of a Raft node and the state it persists.

Log indices start at 1. Entries up to and including ``snapshot_index`` have
been folded into a snapshot and are no longer kept; ``snapshot_term`` is the
term of the last of them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from .messages import LogEntry


class RaftInvariantError(RuntimeError):
    """Raised when an operation would break an invariant of the Raft log."""


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise RaftInvariantError(message)


@dataclass
class RaftLog:
    """Log entries that follow the last snapshot point."""

    entries: list[LogEntry] = field(default_factory=list)
    snapshot_index: int = 0
    snapshot_term: int = 0

    def last_index_and_term(self) -> tuple[int, int]:
        """Index and term of the last entry, or of the snapshot point if empty."""
        if not self.entries:
            return self.snapshot_index, self.snapshot_term
        last = self.entries[-1]
        return last.log_index, last.log_term

    def last_index(self) -> int:
        """Index of the last entry, or of the snapshot point if empty."""
        return self.last_index_and_term()[0]

    def new_command_index(self) -> int:
        """Index that the next appended command receives."""
        return self.last_index() + 1

    def term_at(self, log_index: int) -> int:
        """Term of the entry at ``log_index``, which may be the snapshot point."""
        _require(
            log_index >= self.snapshot_index,
            f"index {log_index} < snapshot index {self.snapshot_index}",
        )
        last = self.last_index()
        _require(log_index <= last, f"index {log_index} > last index {last}")
        if log_index == self.snapshot_index:
            return self.snapshot_term
        return self.entries[self.slice_index(log_index)].log_term

    def slice_index(self, log_index: int) -> int:
        """Position in ``entries`` of the entry at ``log_index``."""
        _require(
            log_index > self.snapshot_index,
            f"index {log_index} <= snapshot index {self.snapshot_index}",
        )
        last = self.last_index()
        _require(log_index <= last, f"index {log_index} > last index {last}")
        return log_index - self.snapshot_index - 1

    def entry(self, log_index: int) -> LogEntry:
        """The kept entry at ``log_index``."""
        return self.entries[self.slice_index(log_index)]

    def entries_after(self, log_index: int) -> list[LogEntry]:
        """All kept entries with an index greater than ``log_index``."""
        _require(
            log_index >= self.snapshot_index,
            f"index {log_index} < snapshot index {self.snapshot_index}",
        )
        last = self.last_index()
        _require(log_index <= last, f"index {log_index} > last index {last}")
        return list(self.entries[log_index - self.snapshot_index:])

    def match(self, log_index: int, log_term: int) -> bool:
        """Tell whether the entry at ``log_index`` has term ``log_term``."""
        last = self.last_index()
        _require(
            self.snapshot_index <= log_index <= last,
            f"index {log_index} outside [{self.snapshot_index}, {last}]",
        )
        return log_term == self.term_at(log_index)

    def up_to_date(self, index: int, term: int) -> bool:
        """Tell whether a log ending at (``index``, ``term``) is at least as new as this one."""
        last_index, last_term = self.last_index_and_term()
        return term > last_term or (term == last_term and index >= last_index)

    def compact_to(self, index: int) -> None:
        """Fold every entry up to and including ``index`` into the snapshot point."""
        last_index = self.last_index()
        new_term = self.entry(index).log_term
        self.entries = self.entries[self.slice_index(index) + 1:]
        self.snapshot_index = index
        self.snapshot_term = new_term
        _require(
            len(self.entries) + self.snapshot_index == last_index,
            f"{len(self.entries)} entries + snapshot index {self.snapshot_index} "
            f"!= last index {last_index}",
        )

    def discard_through(self, index: int, term: int) -> None:
        """Adopt a snapshot ending at (``index``, ``term``) received from a leader."""
        if self.last_index() > index:
            del self.entries[: self.slice_index(index) + 1]
        else:
            self.entries.clear()
        self.snapshot_index = index
        self.snapshot_term = term


def _entry_to_dict(entry: LogEntry) -> dict[str, object]:
    return {
        "command": entry.command,
        "log_term": entry.log_term,
        "log_index": entry.log_index,
    }


def _entry_from_dict(item: object) -> LogEntry:
    if not isinstance(item, dict):
        raise ValueError("log entry must be an object")
    command = item.get("command", "")
    log_term = item.get("log_term", 0)
    log_index = item.get("log_index", 0)
    if not isinstance(command, str):
        raise ValueError("log entry command must be a string")
    if not all(isinstance(v, int) and not isinstance(v, bool) for v in (log_term, log_index)):
        raise ValueError("log entry term and index must be integers")
    return LogEntry(command=command, log_term=log_term, log_index=log_index)


def _int_field(document: dict, name: str) -> int:
    try:
        value = document[name]
    except KeyError:
        raise ValueError(f"missing field {name!r}") from None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"field {name!r} must be an integer")
    return value


@dataclass
class RaftPersistentState:
    """What a Raft node must keep across restarts."""

    current_term: int = 0
    voted_for: int = -1
    last_snapshot_include_index: int = 0
    last_snapshot_include_term: int = 0
    logs: list[LogEntry] = field(default_factory=list)

    def serialize(self) -> str:
        """Encode the state as text suitable for a persister."""
        return json.dumps(
            {
                "current_term": self.current_term,
                "voted_for": self.voted_for,
                "last_snapshot_include_index": self.last_snapshot_include_index,
                "last_snapshot_include_term": self.last_snapshot_include_term,
                "logs": [_entry_to_dict(entry) for entry in self.logs],
            },
            separators=(",", ":"),
        )

    @classmethod
    def parse(cls, data: str) -> RaftPersistentState:
        """Decode text made by :meth:`serialize`; raise ``ValueError`` if malformed."""
        document = json.loads(data)
        if not isinstance(document, dict):
            raise ValueError("persisted state must be an object")
        logs = document.get("logs", [])
        if not isinstance(logs, list):
            raise ValueError("field 'logs' must be a list")
        return cls(
            current_term=_int_field(document, "current_term"),
            voted_for=_int_field(document, "voted_for"),
            last_snapshot_include_index=_int_field(document, "last_snapshot_include_index"),
            last_snapshot_include_term=_int_field(document, "last_snapshot_include_term"),
            logs=[_entry_from_dict(item) for item in logs],
        )