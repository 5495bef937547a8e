"""In-process push channel for order and trade events.

Transport agnostic: the HTTP layer bridges subscribers to Server-Sent Events,
tests subscribe plain callables.

Events published by the core:
  ``order_submitted``, ``order_cancelled``, ``order_filled``, ``trade_executed``.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

from tradearena.utils.logger import logger

Subscriber = Callable[[str, dict[str, Any]], None]


class EventBus:
    """Fan-out of (event, payload) pairs to registered callbacks."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Subscriber:
        """Register ``callback``; usable as a decorator."""
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, payload)
            except Exception:
                # A broken subscriber must not break matching
                logger.exception("[EventBus] Subscriber failed on %s", event)
