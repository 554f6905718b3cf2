"""
ConsoleStream — thread-safe, in-process output sink with bounded history.

Every ``(stream, text)`` pair the engine produces goes through here:
script output lines, warnings, security events, dry-run notices. The
execution hosts publish from their reader threads, so the single
append point is lock-protected.

Thread safety model
───────────────────
- ``_lock`` protects ``_events`` and ``_subscribers``.
- Subscribers are called outside the lock, in publish order.
- ``publish()`` never raises back into the engine: subscriber
  failures are logged at DEBUG and dropped.

Stream names
────────────
``Info``, ``Output``, ``Progress``, ``Warning``, ``Error``, ``Verbose``,
``Debug``, ``Information``, ``Command``, ``DryRun``, ``Security``,
``Trace``. Free-form; the names only drive the log-level mapping.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from tweakguard.core.models.execution import OutputEvent

logger = logging.getLogger(__name__)

MAX_EVENTS = 10_000
DROP_BATCH = 1_000

_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
}


class ConsoleStream:
    """Bounded, subscribable event sink.

    Parameters
    ----------
    max_events : int
        History cap. When exceeded, the oldest ``drop_batch`` events
        are discarded in one go.
    drop_batch : int
        Number of events dropped per overflow.
    """

    def __init__(self, *, max_events: int = MAX_EVENTS, drop_batch: int = DROP_BATCH) -> None:
        self._lock = threading.Lock()
        self._events: list[OutputEvent] = []
        self._subscribers: list[Callable[[OutputEvent], None]] = []
        self._max_events = max_events
        self._drop_batch = drop_batch

    # ── Publishing ──────────────────────────────────────────────

    def publish(self, stream: str, text: str) -> OutputEvent:
        """Record one event and fan it out to subscribers."""
        event = OutputEvent(stream=stream, text=text or "")
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max_events:
                del self._events[: self._drop_batch]
            subscribers = list(self._subscribers)

        logger.log(_LEVELS.get(stream.lower(), logging.INFO), "[%s] %s", stream, event.text)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.debug("Console subscriber failed: %s", e)
        return event

    # ── Subscriptions ───────────────────────────────────────────

    def subscribe(self, callback: Callable[[OutputEvent], None]) -> Callable[[], None]:
        """Register a callback; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    # ── Reading ─────────────────────────────────────────────────

    def snapshot(self) -> list[OutputEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def build_full_log_text(self) -> str:
        """Render history as ``[HH:MM:SS] [stream] text`` lines."""
        lines = []
        for event in self.snapshot():
            lines.append(f"[{_clock(event.timestamp)}] [{event.stream}] {event.text}")
        return "\n".join(lines)


def _clock(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).astimezone().strftime("%H:%M:%S")
    except ValueError:
        return timestamp
