"""Advisory blocked-date index for property calendars."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from staybook.config import get_section
from staybook.database import get_session
from staybook.models.booking import ACTIVE_STATUSES, Booking
from staybook.models.property import AvailabilityBlock
from staybook.terms import iter_nights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilitySnapshot:
    property_id: int
    blocked: frozenset[date]
    computed_at: datetime

    def is_available(self, check_in: date, check_out: date) -> bool:
        return not any(d in self.blocked for d in iter_nights(check_in, check_out))


class AvailabilityIndex:
    """Derives the dates a new booking cannot start on or contain.

    Results are cached per property for ``availability.cache_seconds``. The
    cache may be stale; it feeds calendars and early feedback only, never a
    commit decision.
    """

    def __init__(
        self,
        cache_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = get_section("availability")
        self._ttl = cache_seconds if cache_seconds is not None else config["cache_seconds"]
        self._clock = clock
        self._cache: dict[int, tuple[float, AvailabilitySnapshot]] = {}
        self._lock = threading.Lock()

    def compute_blocked(self, property_id: int) -> set[date]:
        """Read active bookings and host blocks and return every blocked date."""
        session = get_session()
        try:
            return self._compute(session, property_id)
        finally:
            session.close()

    def _compute(self, session: Session, property_id: int) -> set[date]:
        blocked: set[date] = set()
        bookings = (
            session.query(Booking.check_in, Booking.check_out)
            .filter(
                Booking.property_id == property_id,
                Booking.status.in_(ACTIVE_STATUSES),
            )
            .all()
        )
        for check_in, check_out in bookings:
            blocked.update(iter_nights(check_in, check_out))

        manual = (
            session.query(AvailabilityBlock.blocked_date)
            .filter(AvailabilityBlock.property_id == property_id)
            .all()
        )
        blocked.update(row[0] for row in manual)
        return blocked

    def snapshot(self, property_id: int, force: bool = False) -> AvailabilitySnapshot:
        """Return a cached snapshot, recomputing if expired or ``force`` is set."""
        now = self._clock()
        with self._lock:
            cached = self._cache.get(property_id)
            if cached and not force and now - cached[0] < self._ttl:
                return cached[1]

        snap = AvailabilitySnapshot(
            property_id=property_id,
            blocked=frozenset(self.compute_blocked(property_id)),
            computed_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._cache[property_id] = (now, snap)
        logger.debug("Computed %d blocked dates for property %s", len(snap.blocked), property_id)
        return snap

    def invalidate(self, property_id: int | None = None) -> None:
        """Drop cached snapshots for one property, or all of them."""
        with self._lock:
            if property_id is None:
                self._cache.clear()
            else:
                self._cache.pop(property_id, None)

    def is_range_available(self, property_id: int, check_in: date, check_out: date) -> bool:
        """Advisory pre-check for client feedback."""
        return self.snapshot(property_id).is_available(check_in, check_out)


# Shared index for the request layer
availability_index = AvailabilityIndex()
