"""Typed observer channels.

Each event category (progress, cancellation, errors, device lists, engine log
lines ...) gets its own ``Channel`` so listeners receive a single, typed
payload instead of string-keyed ``emit`` calls.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

_log = logging.getLogger("channels")


class Channel(Generic[T]):
    """Fan-out of one payload type to registered listeners."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, payload: T) -> int:
        """Deliver ``payload`` to every listener; return how many were called.

        A failing listener is logged and does not stop delivery to the rest.
        """
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception:  # noqa: BLE001 - listener bugs must not break the emitter
                _log.exception("Listener on channel %s raised", self.name)
        return len(listeners)
