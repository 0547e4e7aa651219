"""Fan-out delivery of conductor push messages (signals)."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]

__all__ = ["EventChannel", "Listener"]


class EventChannel:
    """Named listener lists; each listener gets its own decoded payload.

    Events emitted while nobody listens are dropped, there is no replay.
    """

    def __init__(self, decode: Callable[[Any], Any] = copy.deepcopy) -> None:
        self._decode = decode
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, name: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``name`` and return a function that removes it."""

        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._lock:
            self._listeners.setdefault(name, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(name)
                if listeners is None:
                    return
                try:
                    listeners.remove(listener)
                except ValueError:
                    return
                if not listeners:
                    del self._listeners[name]

        return unsubscribe

    def listener_count(self, name: str) -> int:
        with self._lock:
            return len(self._listeners.get(name, ()))

    def emit(self, name: str, payload: Any) -> int:
        """Deliver ``payload`` to every listener of ``name``; returns how many were called."""

        with self._lock:
            listeners = list(self._listeners.get(name, ()))

        if not listeners:
            logger.debug("Dropping %s event with no listeners", name)
            return 0

        for listener in listeners:
            try:
                value = self._decode(payload)
                listener(value)
            except Exception:
                logger.exception("Listener for %s event raised", name)
        return len(listeners)
