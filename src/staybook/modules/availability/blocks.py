"""Host-managed calendar blocks."""

from __future__ import annotations

import logging
from datetime import date

from staybook.database import get_session
from staybook.errors import ConflictError, NotFoundError
from staybook.models.booking import BookingNight
from staybook.models.property import AvailabilityBlock, Property
from staybook.modules.availability.index import AvailabilityIndex, availability_index

logger = logging.getLogger(__name__)


class HostCalendar:
    """Adds and removes manual blocks on a property's calendar."""

    def __init__(self, index: AvailabilityIndex | None = None) -> None:
        self._index = index or availability_index

    def block_dates(
        self,
        property_id: int,
        dates: list[date],
        host_id: int,
        reason: str | None = None,
    ) -> list[AvailabilityBlock]:
        """Block each date; dates already blocked are left as they are."""
        session = get_session()
        try:
            prop = session.get(Property, property_id)
            if not prop or prop.host_id != host_id:
                raise NotFoundError(f"Property {property_id} not found")

            wanted = sorted(set(dates))
            booked = {
                row[0]
                for row in session.query(BookingNight.night)
                .filter(BookingNight.property_id == property_id, BookingNight.night.in_(wanted))
                .all()
            }
            if booked:
                raise ConflictError(
                    f"Dates already reserved by guests: {', '.join(str(d) for d in sorted(booked))}"
                )

            existing = {
                b.blocked_date: b
                for b in session.query(AvailabilityBlock)
                .filter(
                    AvailabilityBlock.property_id == property_id,
                    AvailabilityBlock.blocked_date.in_(wanted),
                )
                .all()
            }
            blocks = []
            for d in wanted:
                block = existing.get(d)
                if block is None:
                    block = AvailabilityBlock(
                        property_id=property_id,
                        blocked_date=d,
                        reason=reason,
                        created_by=host_id,
                    )
                    session.add(block)
                blocks.append(block)
            session.commit()
            logger.info("Host %s blocked %d dates on property %s", host_id, len(wanted), property_id)
        finally:
            session.close()
        self._index.invalidate(property_id)
        return blocks

    def unblock_dates(self, property_id: int, dates: list[date], host_id: int) -> int:
        """Remove blocks for the given dates; returns how many were removed."""
        session = get_session()
        try:
            prop = session.get(Property, property_id)
            if not prop or prop.host_id != host_id:
                raise NotFoundError(f"Property {property_id} not found")
            removed = (
                session.query(AvailabilityBlock)
                .filter(
                    AvailabilityBlock.property_id == property_id,
                    AvailabilityBlock.blocked_date.in_(list(set(dates))),
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            logger.info("Unblocked %d dates on property %s", removed, property_id)
        finally:
            session.close()
        self._index.invalidate(property_id)
        return removed
