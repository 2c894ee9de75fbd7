"""Capacity, minimum-stay and date checks for a booking request."""

from __future__ import annotations

import logging
from datetime import date

from staybook.errors import (
    CapacityExceededError,
    MinimumStayError,
    PastDateError,
    PaymentMethodError,
    UnsupportedRentalTypeError,
    ValidationError,
)
from staybook.terms import BookingRequest, PaymentMethod, PropertyProfile, RentalType

logger = logging.getLogger(__name__)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n != 1 else ''}"


def validate_request(
    profile: PropertyProfile,
    request: BookingRequest,
    today: date | None = None,
) -> tuple[date, date]:
    """Run every local check and return the stay range.

    Raises a ``ValidationError`` subclass on the first failing rule. Nothing
    is read from or written to storage.
    """
    today = today or date.today()
    check_in, check_out = request.stay_range()

    if request.property_id != profile.property_id:
        raise ValidationError("Request does not match the property being booked")

    if not profile.supports(request.rental_type):
        raise UnsupportedRentalTypeError(
            f"Property {profile.property_id} does not offer {request.rental_type.value} stays"
        )

    if check_in < today:
        raise PastDateError(f"Check-in {check_in} is in the past")

    if request.guests < 1:
        raise CapacityExceededError("At least one guest is required")
    if request.guests > profile.max_guests:
        raise CapacityExceededError(
            f"This property hosts at most {_plural(profile.max_guests, 'guest')}"
        )

    if request.rental_type is RentalType.DAILY:
        terms = profile.daily_terms()
        nights = (check_out - check_in).days
        if nights < terms.min_nights:
            raise MinimumStayError(f"Minimum stay is {_plural(terms.min_nights, 'night')}")
    else:
        monthly = profile.monthly_terms()
        if request.duration_months < monthly.min_months:
            raise MinimumStayError(f"Minimum stay is {_plural(monthly.min_months, 'month')}")

    if request.payment_method is PaymentMethod.CASH and not profile.accepts_cash:
        raise PaymentMethodError("The host does not accept cash payment for this property")

    logger.debug(
        "Request for property %s passed validation: %s..%s, %d guests",
        profile.property_id, check_in, check_out, request.guests,
    )
    return check_in, check_out
