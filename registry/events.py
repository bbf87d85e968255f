# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Event bus for lifecycle and moderation notifications.

One bus per process, handed to whatever publishes or subscribes.
Delivery is synchronous and in publish order. A handler that raises is
logged and skipped; it never reaches the publisher or other handlers.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from protocol import EventKind

logger = logging.getLogger(__name__)

Handler = Callable[[EventKind, dict], Any]


@dataclass(eq=False)
class _Subscription:
    """One registration, compared by identity."""
    handler: Handler


class EventBus:
    """Per-kind subscriber lists with fault-isolated fan-out."""

    def __init__(self):
        self._handlers: dict[EventKind, list[_Subscription]] = {kind: [] for kind in EventKind}
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self, kind: EventKind, handler: Handler) -> Callable[[], None]:
        """Register a handler for one kind. Returns an unsubscribe callable."""
        kind = EventKind(kind)
        subscription = _Subscription(handler)
        with self._lock:
            if self._closed:
                raise RuntimeError("Event bus is closed")
            self._handlers[kind].append(subscription)

        def unsubscribe():
            with self._lock:
                if subscription in self._handlers[kind]:
                    self._handlers[kind].remove(subscription)

        return unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        """Register one handler for every kind."""
        unsubscribers = [self.subscribe(kind, handler) for kind in EventKind]

        def unsubscribe():
            for unsub in unsubscribers:
                unsub()

        return unsubscribe

    def publish(self, kind: EventKind, payload: dict) -> int:
        """Deliver an event to every subscriber of its kind.

        Returns the number of handlers that ran without raising.
        """
        with self._lock:
            if self._closed:
                return 0
            subscriptions = list(self._handlers[kind])

        delivered = 0
        for subscription in subscriptions:
            try:
                subscription.handler(kind, payload)
                delivered += 1
            except Exception:
                logger.exception("Event handler %r failed on %s", subscription.handler, kind.value)
        return delivered

    def subscriber_count(self, kind: EventKind | None = None) -> int:
        with self._lock:
            if kind is not None:
                return len(self._handlers[kind])
            return sum(len(h) for h in self._handlers.values())

    def close(self):
        """Drop every subscriber. Later publishes are no-ops."""
        with self._lock:
            self._closed = True
            for handlers in self._handlers.values():
                handlers.clear()
