"""
In-process event bus for session and time-window lifecycle notifications.

Subscribers register per event type (or for all types) and get a
Subscription handle they can cancel. Delivery is synchronous and follows
subscription order. A handler that raises is logged and skipped; the
remaining handlers still run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, get_args

from .models import utcnow

logger = logging.getLogger("termsession")


EventType = Literal[
    "session:created",
    "session:reconnected",
    "session:disconnected",
    "session:inactive",
    "session:recovered",
    "session:recovery:warning",
    "session:recovery:window-created",
    "window:created",
    "window:overlap",
    "window:merged",
    "window:split",
    "window:split:auto",
]

EVENT_TYPES: tuple[str, ...] = get_args(EventType)

_ALL = "*"


@dataclass(frozen=True)
class SessionEvent:
    """A single notification delivered to subscribers."""

    type: EventType
    data: dict[str, Any]
    ts: datetime = field(default_factory=utcnow)


Handler = Callable[[SessionEvent], None]


class Subscription:
    """Handle returned by EventBus.subscribe(); cancel() stops delivery."""

    def __init__(self, bus: "EventBus", event_type: str, handler: Handler) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: Handler) -> Subscription:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        return self._add(Subscription(self, event_type, handler))

    def subscribe_all(self, handler: Handler) -> Subscription:
        return self._add(Subscription(self, _ALL, handler))

    def emit(self, event_type: EventType, **data: Any) -> SessionEvent:
        """Deliver an event to every matching subscriber, in subscription order."""
        event = SessionEvent(type=event_type, data=data)
        with self._lock:
            targets = [
                sub for sub in self._subscriptions
                if sub.event_type in (event_type, _ALL)
            ]
        for sub in targets:
            # A handler earlier in this emit may have cancelled a later one.
            if not sub.active:
                continue
            try:
                sub.handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type)
        return event

    def subscriber_count(self, event_type: EventType | None = None) -> int:
        with self._lock:
            if event_type is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions if sub.event_type in (event_type, _ALL))

    def clear(self) -> None:
        with self._lock:
            subs = list(self._subscriptions)
            self._subscriptions.clear()
        for sub in subs:
            sub.active = False

    def _add(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
