"""Named-event fan-out where one failing subscriber never affects the others."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class EventEmitter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Callable[..., None]]] = defaultdict(list)

    def on(self, event: str, callback: Callable[..., None]) -> Unsubscribe:
        with self._lock:
            self._listeners[event].append(callback)

        def _unsubscribe() -> None:
            self.off(event, callback)

        return _unsubscribe

    def off(self, event: str, callback: Callable[..., None]) -> None:
        with self._lock:
            listeners = self._listeners.get(event)
            if listeners and callback in listeners:
                listeners.remove(callback)

    def emit(self, event: str, *args: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, ()))
        for callback in listeners:
            try:
                callback(*args)
            except Exception:
                logger.exception("Subscriber for %r raised", event)

    def remove_all(self, event: str | None = None) -> None:
        with self._lock:
            if event is None:
                self._listeners.clear()
            else:
                self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, ()))
