"""Database models."""

from staybook.models.booking import Booking, BookingAudit, BookingDraft, BookingNight
from staybook.models.promo import PromoCode, PromoGrant
from staybook.models.property import AvailabilityBlock, Property

__all__ = [
    "AvailabilityBlock",
    "Booking",
    "BookingAudit",
    "BookingDraft",
    "BookingNight",
    "PromoCode",
    "PromoGrant",
    "Property",
]
