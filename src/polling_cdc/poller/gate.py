"""Pause gate between offset advance and event delivery."""

import threading
from typing import Optional


class PauseGate:
    """
    Blocks the poll thread while a session is paused.

    pause()/resume() may be called from any thread. Resuming a gate that is
    not paused does nothing.
    """

    def __init__(self):
        self._condition = threading.Condition()
        self._paused = False

    @property
    def is_paused(self) -> bool:
        with self._condition:
            return self._paused

    def pause(self) -> None:
        with self._condition:
            self._paused = True

    def resume(self) -> None:
        with self._condition:
            self._paused = False
            self._condition.notify_all()

    def wake(self) -> None:
        """Wake waiters so they re-check cancellation."""
        with self._condition:
            self._condition.notify_all()

    def wait(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Block while paused.

        Args:
            cancel_event: Stops the wait once set; set it then call wake()

        Returns:
            True when delivery may proceed, False if cancelled
        """
        with self._condition:
            while self._paused:
                if cancel_event is not None and cancel_event.is_set():
                    return False
                self._condition.wait()
            return cancel_event is None or not cancel_event.is_set()
