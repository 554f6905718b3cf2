"""
Cooperative cancellation — the only cross-cutting concurrency primitive.

One CancellationToken is threaded through a whole batch. It is checked
at every operation boundary, every step boundary and inside every
polling loop that waits on a running script. Cancelling runs the
registered callbacks (process shutdown hooks) exactly once.

ExecutionCoordinator is the process-wide single-run gate: one batch at
a time, and a handle for SIGINT / UI cancel buttons to trip the
active token.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


class OperationCancelledError(Exception):
    """Raised when the cancellation token has been tripped."""

    def __init__(self, message: str = "Operation cancelled."):
        super().__init__(message)


class BatchCancelledError(OperationCancelledError):
    """Raised by the orchestrator when a batch stops on cancellation.

    Carries the results collected before the token tripped.
    """

    def __init__(self, partial_result: Any, message: str = "Batch cancelled."):
        super().__init__(message)
        self.partial_result = partial_result


class CancellationToken:
    """Thread-safe, one-way cancellation flag with callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Trip the token and run registered callbacks (once)."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback to run on cancellation.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._unregister(callback)

        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)

    def _unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


class ExecutionCoordinator:
    """Allows exactly one batch to run at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._token: CancellationToken | None = None
        self._running = False
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def on_running_changed(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def begin(self) -> CancellationToken:
        """Start a run and return its token.

        Raises:
            RuntimeError: If another run is active.
        """
        with self._lock:
            if self._running:
                raise RuntimeError("Another operation is already running.")
            self._running = True
            self._token = CancellationToken()
            token = self._token
            listeners = list(self._listeners)

        self._notify(listeners, True)
        return token

    def complete(self) -> None:
        with self._lock:
            if not self._running and self._token is None:
                return
            self._running = False
            self._token = None
            listeners = list(self._listeners)

        self._notify(listeners, False)

    def cancel(self) -> None:
        with self._lock:
            token = self._token
        if token is not None:
            token.cancel()

    @staticmethod
    def _notify(listeners: list[Callable[[bool], None]], running: bool) -> None:
        for listener in listeners:
            try:
                listener(running)
            except Exception as e:
                logger.debug("Running-changed listener failed: %s", e)
