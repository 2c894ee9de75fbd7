"""Overlap checks against active bookings and host blocks."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from staybook.models.booking import ACTIVE_STATUSES, Booking
from staybook.models.property import AvailabilityBlock

logger = logging.getLogger(__name__)


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """True if half-open ranges ``[a_start, a_end)`` and ``[b_start, b_end)`` overlap."""
    return a_start < b_end and b_start < a_end


class ConflictChecker:
    """Tests a candidate stay against the property's active bookings.

    Every query runs on the caller's session, so when the caller is the
    reservation store the check sits inside the same transaction as the
    insert. Called on a throwaway session it is only an advisory pre-check.
    """

    def find_conflicts(
        self,
        session: Session,
        property_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: int | None = None,
    ) -> list[Booking]:
        """Return active bookings whose range overlaps ``[check_in, check_out)``."""
        query = session.query(Booking).filter(
            Booking.property_id == property_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.check_in < check_out,
            Booking.check_out > check_in,
        )
        if exclude_booking_id is not None:
            query = query.filter(Booking.id != exclude_booking_id)
        return query.all()

    def has_conflict(
        self,
        session: Session,
        property_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: int | None = None,
    ) -> bool:
        conflicts = self.find_conflicts(session, property_id, check_in, check_out, exclude_booking_id)
        if conflicts:
            logger.info(
                "Range %s..%s on property %s overlaps bookings %s",
                check_in, check_out, property_id, [b.id for b in conflicts],
            )
        return bool(conflicts)

    def has_blocked_dates(
        self, session: Session, property_id: int, check_in: date, check_out: date
    ) -> bool:
        """True if the host has blocked any date in ``[check_in, check_out)``."""
        return (
            session.query(AvailabilityBlock.id)
            .filter(
                AvailabilityBlock.property_id == property_id,
                AvailabilityBlock.blocked_date >= check_in,
                AvailabilityBlock.blocked_date < check_out,
            )
            .first()
            is not None
        )
