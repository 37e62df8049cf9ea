"""Read-only lifecycle notifications.

Pattern: Observer
------------------
Session managers and lease containers publish plain event objects to the
listeners registered with an ``EventPublisher``.  Listeners are notified on the
thread that produced the event (usually a scheduler worker) and cannot change
the outcome of the operation that produced it.  A failing listener is logged
and skipped; it never aborts the renewal that triggered it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventListener = Callable[[Any], None]


class EventPublisher:
    """Thread-safe fan-out of events to registered listeners."""

    def __init__(self, listeners: list[EventListener] | None = None) -> None:
        self._lock = threading.Lock()
        self._listeners: list[EventListener] = list(listeners or [])

    def add_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Listener %r failed while handling %s",
                    listener,
                    type(event).__name__,
                )
