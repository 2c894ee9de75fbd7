"""Lightweight in-process pub/sub event bus."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from staybook.models.booking import Booking

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    # Booking events carry booking_id, reference, property_id, guest_id and status
    BOOKING_CREATED = "booking_created"
    BOOKING_STATUS_CHANGED = "booking_status_changed"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    AVAILABILITY_REFRESHED = "availability_refreshed"


@dataclass
class Event:
    event_type: EventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def booking_id(self) -> int | None:
        return self.data.get("booking_id")


def booking_event(event_type: EventType, booking: Booking, **extra: Any) -> Event:
    """Build an event for ``booking`` with its identifying fields filled in."""
    data = {
        "booking_id": booking.id,
        "reference": booking.reference,
        "property_id": booking.property_id,
        "guest_id": booking.guest_id,
        "status": booking.status,
    }
    data.update(extra)
    return Event(event_type=event_type, data=data)


# Type for subscriber callbacks
Subscriber = Callable[[Event], None]


class EventBus:
    """Simple synchronous pub/sub event bus."""

    def __init__(self) -> None:
        self._subscribers: dict[EventType, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: EventType, callback: Subscriber) -> None:
        """Register a callback for an event type."""
        self._subscribers[event_type].append(callback)
        logger.debug("Subscribed %s to %s", getattr(callback, "__name__", callback), event_type.value)

    def unsubscribe(self, event_type: EventType, callback: Subscriber) -> None:
        """Remove a previously registered callback, if present."""
        try:
            self._subscribers[event_type].remove(callback)
        except ValueError:
            logger.debug("Callback was not subscribed to %s", event_type.value)

    def publish(self, event: Event) -> None:
        """Publish an event to all subscribers."""
        if event.booking_id is not None:
            logger.info("Publishing %s for booking %s", event.event_type.value, event.data.get("reference", event.booking_id))
        else:
            logger.info("Publishing %s", event.event_type.value)
        for callback in list(self._subscribers.get(event.event_type, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Error in subscriber %s for event %s",
                    getattr(callback, "__name__", callback),
                    event.event_type.value,
                )


# Global event bus instance
event_bus = EventBus()
