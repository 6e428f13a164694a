"""Cooperative cancellation shared by a turn and the tool calls it spawns."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation flag that suspending operations check.

    The stream reader checks it at every chunk boundary and the scheduler
    at every tool-call transition. Callbacks let waiters react immediately
    (e.g. cancelling calls that are still awaiting approval).
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            self._run(cb)

    def add_callback(self, cb: Callable[[], None]) -> None:
        """Run cb once on cancellation (right away if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        self._run(cb)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @staticmethod
    def _run(cb: Callable[[], None]) -> None:
        try:
            cb()
        except Exception:
            logger.exception("cancellation callback failed")
