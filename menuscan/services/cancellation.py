"""
Cooperative cancellation shared by the orchestrator and the transport.
"""

import logging
import threading
from typing import Callable, List

from menuscan.services.errors import AnalysisCancelledError


logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation flag with callbacks.

    Callbacks registered with add_callback run once, on the thread that calls
    cancel(). A callback added after cancellation runs immediately. The
    transport registers a callback that shuts down the connection carrying
    the request before it is sent, so a cancel aborts the socket instead of
    ignoring the result.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            self._run_callback(callback)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(f"Analysis {self.reason}")

    def _run_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"Cancellation callback failed: {e}")
