"""Validated rental terms and booking requests.

Property rows come from the listing side of the marketplace and are loosely
shaped: rental types are a comma-separated column and the rates that matter
depend on which types are enabled. ``load_profile`` turns a row into a
``PropertyProfile`` whose ``terms`` is exactly one of ``DailyTerms``,
``MonthlyTerms`` or ``FlexibleTerms``, so pricing and validation never branch
on optional fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta

from staybook.errors import InvalidDateRangeError, MalformedRecordError, UnsupportedRentalTypeError
from staybook.models.property import Property


class RentalType(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"


@dataclass(frozen=True)
class DailyTerms:
    nightly_rate: float | None
    min_nights: int = 1


@dataclass(frozen=True)
class MonthlyTerms:
    monthly_rate: float | None
    min_months: int = 1


@dataclass(frozen=True)
class FlexibleTerms:
    daily: DailyTerms
    monthly: MonthlyTerms


RentalTerms = DailyTerms | MonthlyTerms | FlexibleTerms


@dataclass(frozen=True)
class PropertyProfile:
    property_id: int
    host_id: int
    max_guests: int
    accepts_cash: bool
    checkin_time: time
    terms: RentalTerms

    def supports(self, rental_type: RentalType) -> bool:
        if isinstance(self.terms, FlexibleTerms):
            return True
        if rental_type is RentalType.DAILY:
            return isinstance(self.terms, DailyTerms)
        return isinstance(self.terms, MonthlyTerms)

    def daily_terms(self) -> DailyTerms:
        if isinstance(self.terms, FlexibleTerms):
            return self.terms.daily
        if isinstance(self.terms, DailyTerms):
            return self.terms
        raise UnsupportedRentalTypeError(
            f"Property {self.property_id} does not offer nightly stays"
        )

    def monthly_terms(self) -> MonthlyTerms:
        if isinstance(self.terms, FlexibleTerms):
            return self.terms.monthly
        if isinstance(self.terms, MonthlyTerms):
            return self.terms
        raise UnsupportedRentalTypeError(
            f"Property {self.property_id} does not offer monthly stays"
        )


def _positive_rate(value: float | None, field_name: str, property_id: int) -> float | None:
    # Zero means "not priced" on the listing side, same as NULL.
    if value is None or value == 0:
        return None
    if value < 0:
        raise MalformedRecordError(f"Property {property_id}: {field_name} is negative ({value})")
    return float(value)


def _minimum(value: int | None, field_name: str, property_id: int) -> int:
    if value is None:
        return 1
    if value < 1:
        raise MalformedRecordError(f"Property {property_id}: {field_name} must be at least 1")
    return int(value)


def _parse_time(value: str | None, property_id: int) -> time:
    if not value:
        return time(15, 0)
    try:
        hour, minute = value.split(":")
        return time(int(hour), int(minute))
    except ValueError as exc:
        raise MalformedRecordError(f"Property {property_id}: bad check-in time {value!r}") from exc


def parse_rental_types(raw: str | None) -> set[RentalType]:
    """Parse the ``rental_types`` column; an empty value means nightly only."""
    if not raw or not raw.strip():
        return {RentalType.DAILY}
    types: set[RentalType] = set()
    for part in raw.split(","):
        part = part.strip().lower()
        if part == "both":
            types.update({RentalType.DAILY, RentalType.MONTHLY})
        elif part:
            try:
                types.add(RentalType(part))
            except ValueError as exc:
                raise MalformedRecordError(f"Unknown rental type {part!r}") from exc
    return types


def load_profile(prop: Property) -> PropertyProfile:
    """Validate a property row into a ``PropertyProfile``."""
    if prop.max_guests is None or prop.max_guests < 1:
        raise MalformedRecordError(f"Property {prop.id}: guest capacity must be at least 1")

    types = parse_rental_types(prop.rental_types)
    daily = DailyTerms(
        nightly_rate=_positive_rate(prop.nightly_rate, "nightly_rate", prop.id),
        min_nights=_minimum(prop.min_nights, "min_nights", prop.id),
    )
    monthly = MonthlyTerms(
        monthly_rate=_positive_rate(prop.monthly_rate, "monthly_rate", prop.id),
        min_months=_minimum(prop.min_months, "min_months", prop.id),
    )

    terms: RentalTerms
    if types == {RentalType.DAILY, RentalType.MONTHLY}:
        terms = FlexibleTerms(daily=daily, monthly=monthly)
    elif RentalType.MONTHLY in types:
        terms = monthly
    else:
        terms = daily

    return PropertyProfile(
        property_id=prop.id,
        host_id=prop.host_id,
        max_guests=prop.max_guests,
        accepts_cash=bool(prop.accepts_cash),
        checkin_time=_parse_time(prop.checkin_time, prop.id),
        terms=terms,
    )


@dataclass(frozen=True)
class BookingRequest:
    """A guest's selection before it has been validated or persisted.

    Daily requests carry ``check_in``/``check_out``; monthly requests carry
    ``check_in`` as the start date plus ``duration_months``.
    """

    property_id: int
    guest_id: int
    rental_type: RentalType
    guests: int
    check_in: date
    check_out: date | None = None
    duration_months: int | None = None
    promo_code: str | None = None
    payment_method: PaymentMethod = PaymentMethod.CARD

    def stay_range(self) -> tuple[date, date]:
        """Return the half-open ``[check_in, check_out)`` range of the stay."""
        if self.rental_type is RentalType.MONTHLY:
            if not self.duration_months or self.duration_months < 1:
                raise InvalidDateRangeError("Monthly bookings need a duration of at least one month")
            return self.check_in, self.check_in + relativedelta(months=self.duration_months)

        if self.check_out is None:
            raise InvalidDateRangeError("Please select check-in and check-out dates")
        if self.check_out <= self.check_in:
            raise InvalidDateRangeError("Check-out must be after check-in")
        return self.check_in, self.check_out


def iter_nights(check_in: date, check_out: date):
    """Yield every date in ``[check_in, check_out)``."""
    current = check_in
    while current < check_out:
        yield current
        current += timedelta(days=1)
