"""File-backed storage for a node's Raft state and its snapshot."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import TextIO


def _open_for_writing(path: Path) -> TextIO:
    return open(path, "w", encoding="utf-8", newline="")


def _overwrite(stream: TextIO, data: str) -> None:
    stream.seek(0)
    stream.truncate()
    stream.write(data)
    stream.flush()


def _read(path: Path) -> str:
    try:
        with open(path, encoding="utf-8", newline="") as stream:
            return stream.read()
    except FileNotFoundError:
        return ""


class Persister:
    """Keeps ``raftstatePersist<me>.txt`` and ``snapshotPersist<me>.txt``.

    Both files are emptied when the persister is created. Each save
    replaces the previous contents. All methods are thread-safe.
    """

    def __init__(self, me: int, directory: str | os.PathLike[str] = ".") -> None:
        base = Path(directory)
        self.raft_state_path = base / f"raftstatePersist{me}.txt"
        self.snapshot_path = base / f"snapshotPersist{me}.txt"
        self._lock = threading.Lock()
        self._raft_state_size = 0
        self._raft_state_out = _open_for_writing(self.raft_state_path)
        try:
            self._snapshot_out = _open_for_writing(self.snapshot_path)
        except OSError:
            self._raft_state_out.close()
            raise

    def save(self, raft_state: str, snapshot: str) -> None:
        """Store the Raft state and the snapshot together."""
        with self._lock:
            _overwrite(self._raft_state_out, raft_state)
            _overwrite(self._snapshot_out, snapshot)
            self._raft_state_size = len(raft_state.encode("utf-8"))

    def read_snapshot(self) -> str:
        """Return the stored snapshot, or an empty string if there is none."""
        with self._lock:
            return _read(self.snapshot_path)

    def save_raft_state(self, data: str) -> None:
        """Store the Raft state, leaving the snapshot as it is."""
        with self._lock:
            _overwrite(self._raft_state_out, data)
            self._raft_state_size = len(data.encode("utf-8"))

    def raft_state_size(self) -> int:
        """Size in bytes of the last Raft state saved."""
        with self._lock:
            return self._raft_state_size

    def read_raft_state(self) -> str:
        """Return the stored Raft state, or an empty string if there is none."""
        with self._lock:
            return _read(self.raft_state_path)

    def close(self) -> None:
        """Close the underlying files; further saves raise ``ValueError``."""
        with self._lock:
            self._raft_state_out.close()
            self._snapshot_out.close()

    def __enter__(self) -> Persister:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()