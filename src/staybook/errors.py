"""Typed rejections raised by the booking engine.

Every error carries a short machine-readable ``code`` so callers (the HTTP
layer, the booking flow) can surface a precise reason without parsing the
message text.
"""

from __future__ import annotations


class BookingError(Exception):
    """Base class for all booking engine errors."""

    code = "booking_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


# --- Validation: recovered locally, no side effects ---


class ValidationError(BookingError):
    code = "validation_error"


class CapacityExceededError(ValidationError):
    code = "capacity_exceeded"


class MinimumStayError(ValidationError):
    code = "minimum_stay_not_met"


class InvalidDateRangeError(ValidationError):
    code = "invalid_date_range"


class PastDateError(ValidationError):
    code = "past_date"


class UnsupportedRentalTypeError(ValidationError):
    code = "unsupported_rental_type"


class PaymentMethodError(ValidationError):
    code = "payment_method_not_accepted"


class CancellationWindowError(ValidationError):
    """Cancellation requested inside the free-cancellation window."""

    code = "cancellation_window_closed"


class InvalidTransitionError(ValidationError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid booking transition: {current} -> {target}")
        self.current = current
        self.target = target


class MalformedRecordError(ValidationError):
    """A record from an external provider failed boundary validation."""

    code = "malformed_record"


# --- Commit-time race ---


class ConflictError(BookingError):
    """The requested dates are no longer available."""

    code = "conflict_detected"


# --- Pricing / promotions ---


class PricingError(BookingError):
    code = "pricing_error"


class RateNotSetError(PricingError):
    code = "rate_not_set"


class PromotionError(BookingError):
    code = "promotion_error"


class PromoCodeInvalidError(PromotionError):
    code = "promo_invalid"


class PromoCodeExpiredError(PromotionError):
    code = "code_expired"


class PromoCodeInUseError(PromotionError):
    code = "promo_in_use"


# --- Payments ---


class PaymentError(BookingError):
    code = "payment_error"


class PaymentDeclinedError(PaymentError):
    code = "payment_declined"


class PaymentGatewayError(PaymentError):
    """The gateway could not be reached or returned an unusable response."""

    code = "payment_gateway_unavailable"


# --- Lookup / infrastructure ---


class NotFoundError(BookingError):
    code = "not_found"


class PersistenceError(BookingError):
    """Storage failed after retrying; nothing was committed."""

    code = "persistence_failure"
