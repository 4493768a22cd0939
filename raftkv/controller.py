"""Per-call status of a remote procedure call."""

from __future__ import annotations

from typing import Callable


class RpcController:
    """Records whether a call failed and why, and supports cancellation."""

    def __init__(self) -> None:
        self.failed = False
        self.error_text = ""
        self._canceled = False
        self._cancel_callbacks: list[Callable[[], None]] = []

    def reset(self) -> None:
        """Return the controller to its initial state."""
        self.failed = False
        self.error_text = ""
        self._canceled = False
        self._cancel_callbacks = []

    def set_failed(self, reason: str) -> None:
        """Mark the call as failed with ``reason``."""
        self.failed = True
        self.error_text = reason

    def start_cancel(self) -> None:
        """Request cancellation and run the registered callbacks once."""
        if self._canceled:
            return
        self._canceled = True
        callbacks, self._cancel_callbacks = self._cancel_callbacks, []
        for callback in callbacks:
            callback()

    def is_canceled(self) -> bool:
        """Tell whether cancellation was requested."""
        return self._canceled

    def notify_on_cancel(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` when the call is canceled (now, if it already was)."""
        if self._canceled:
            callback()
        else:
            self._cancel_callbacks.append(callback)