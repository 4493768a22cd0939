"""Timers that drive a Raft node: elections, heartbeats and applying.

Each timer runs in its own daemon thread. All durations are in seconds and
are measured with :func:`time.monotonic`, the clock the node uses to record
when its timers were last reset.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable

from .applymsg import ApplyMsg
from .raft import Raft

_log = logging.getLogger(__name__)

# Sleeps shorter than this are skipped and the deadline is checked at once.
_MIN_SLEEP = 0.001


def randomized_election_timeout(low: float, high: float) -> float:
    """A random election timeout in seconds, between ``low`` and ``high``."""
    if low < 0 or high < low:
        raise ValueError(f"invalid election timeout range [{low}, {high}]")
    return random.uniform(low, high)


class RaftTicker:
    """Runs the election, heartbeat and apply loops of one :class:`Raft` node."""

    def __init__(
        self,
        raft: Raft,
        heartbeat_timeout: float = 0.025,
        election_timeout_min: float = 0.3,
        election_timeout_max: float = 0.5,
        apply_interval: float = 0.01,
    ) -> None:
        if heartbeat_timeout <= 0 or apply_interval <= 0:
            raise ValueError("heartbeat timeout and apply interval must be positive")
        if election_timeout_min <= 0 or election_timeout_max < election_timeout_min:
            raise ValueError(
                f"invalid election timeout range "
                f"[{election_timeout_min}, {election_timeout_max}]"
            )
        self.raft = raft
        self.heartbeat_timeout = heartbeat_timeout
        self.election_timeout_min = election_timeout_min
        self.election_timeout_max = election_timeout_max
        self.apply_interval = apply_interval
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        """Whether any of the loops is still running."""
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start the three loops in background threads."""
        if self.running:
            raise RuntimeError("ticker is already running")
        self._stopped.clear()
        loops: list[tuple[str, Callable[[], None]]] = [
            ("raft-heartbeat", self.run_heartbeat_timer),
            ("raft-election", self.run_election_timer),
            ("raft-applier", self.run_applier),
        ]
        self._threads = [
            threading.Thread(target=target, name=name, daemon=True) for name, target in loops
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop the loops and wait for their threads to finish."""
        self._stopped.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()
        self._threads = []

    def _is_leader(self) -> bool:
        return self.raft.get_state()[1]

    def run_election_timer(self) -> None:
        """Start an election whenever the election timeout passes unreset."""
        while not self._stopped.is_set():
            while self._is_leader():
                if self._stopped.wait(self.heartbeat_timeout):
                    return
            wake_time = time.monotonic()
            timeout = randomized_election_timeout(
                self.election_timeout_min, self.election_timeout_max
            )
            sleep_for = timeout + self.raft.last_reset_election_time - wake_time
            if sleep_for > _MIN_SLEEP:
                if self._stopped.wait(sleep_for):
                    return
            if self.raft.last_reset_election_time > wake_time:
                # The timer was reset while sleeping; no timeout yet.
                continue
            self.raft.do_election()

    def run_heartbeat_timer(self) -> None:
        """Send heartbeats every ``heartbeat_timeout`` while leader."""
        while not self._stopped.is_set():
            while not self._is_leader():
                if self._stopped.wait(self.heartbeat_timeout):
                    return
            wake_time = time.monotonic()
            sleep_for = (
                self.heartbeat_timeout + self.raft.last_reset_heartbeat_time - wake_time
            )
            if sleep_for > _MIN_SLEEP:
                if self._stopped.wait(sleep_for):
                    return
            if self.raft.last_reset_heartbeat_time > wake_time:
                continue
            self.raft.do_heartbeat()

    def run_applier(self) -> None:
        """Deliver newly committed entries every ``apply_interval``."""
        while not self._stopped.is_set():
            messages = self.apply_once()
            if messages:
                _log.debug("[applier-rf%d] applied %d messages", self.raft.me, len(messages))
            if self._stopped.wait(self.apply_interval):
                return

    def apply_once(self) -> list[ApplyMsg]:
        """Push the entries committed since the last call onto the apply queue.

        Returns the messages that were pushed, in log order.
        """
        messages = self.raft.get_apply_logs()
        for message in messages:
            self.raft.apply_queue.put(message)
        return messages