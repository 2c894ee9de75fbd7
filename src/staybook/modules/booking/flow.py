"""Guest-facing booking flow: summary, submission, payment results and cancellation."""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from staybook.config import get_section
from staybook.database import get_session
from staybook.errors import (
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentError,
    PaymentGatewayError,
    PricingError,
    PromotionError,
    ValidationError,
)
from staybook.events import EventBus, EventType, booking_event, event_bus
from staybook.models.booking import Booking, BookingDraft
from staybook.models.property import Property
from staybook.modules.availability.index import AvailabilityIndex, availability_index
from staybook.modules.booking.state import Actor, ActorKind, BookingStatus
from staybook.modules.booking.store import ReservationStore, utc_naive
from staybook.modules.booking.validation import validate_request
from staybook.modules.payments.gateway import PaymentGateway, PaymentStatus
from staybook.modules.pricing.engine import AppliedPromo, PriceBreakdown, PricingCalculator
from staybook.modules.promotions.codes import PromoCodeProvider
from staybook.terms import BookingRequest, PaymentMethod, RentalType, load_profile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Who is calling. Threaded explicitly through every handler."""

    actor_id: int
    role: ActorKind = ActorKind.GUEST

    @property
    def actor(self) -> Actor:
        return Actor(self.role, self.actor_id)


@dataclass(frozen=True)
class Quote:
    """A validated, priced selection held under a draft token."""

    token: str
    status: BookingStatus
    check_in: date
    check_out: date
    price: PriceBreakdown
    expires_at: datetime
    promo_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "status": self.status.value,
            "check_in": self.check_in.isoformat(),
            "check_out": self.check_out.isoformat(),
            "price": self.price.to_dict(),
            "expires_at": self.expires_at.isoformat(),
            "promo_error": self.promo_error,
        }


@dataclass(frozen=True)
class SubmitResult:
    booking: Booking
    redirect_url: str | None = None


def _request_to_payload(request: BookingRequest, price: PriceBreakdown, abort_on_promo_error: bool) -> str:
    return json.dumps({
        "property_id": request.property_id,
        "guest_id": request.guest_id,
        "rental_type": request.rental_type.value,
        "guests": request.guests,
        "check_in": request.check_in.isoformat(),
        "check_out": request.check_out.isoformat() if request.check_out else None,
        "duration_months": request.duration_months,
        "promo_code": request.promo_code,
        "payment_method": request.payment_method.value,
        "abort_on_promo_error": abort_on_promo_error,
        "final_total": price.final_total,
    })


def _request_from_payload(data: dict) -> BookingRequest:
    return BookingRequest(
        property_id=data["property_id"],
        guest_id=data["guest_id"],
        rental_type=RentalType(data["rental_type"]),
        guests=data["guests"],
        check_in=date.fromisoformat(data["check_in"]),
        check_out=date.fromisoformat(data["check_out"]) if data.get("check_out") else None,
        duration_months=data.get("duration_months"),
        promo_code=data.get("promo_code"),
        payment_method=PaymentMethod(data["payment_method"]),
    )


class BookingService:
    """Drives a booking from selection to a committed reservation.

    Nothing here holds state between calls: the priced selection lives in a
    short-lived ``BookingDraft`` row and every write goes through
    ``ReservationStore``.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        store: ReservationStore | None = None,
        pricing: PricingCalculator | None = None,
        promos: PromoCodeProvider | None = None,
        index: AvailabilityIndex | None = None,
        bus: EventBus | None = None,
        draft_ttl_minutes: float | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store or ReservationStore()
        self._pricing = pricing or PricingCalculator()
        self._promos = promos or PromoCodeProvider()
        self._index = index or availability_index
        self._bus = bus or event_bus
        if draft_ttl_minutes is None:
            draft_ttl_minutes = get_section("booking")["draft_ttl_minutes"]
        self._draft_ttl = timedelta(minutes=draft_ttl_minutes)

    @property
    def store(self) -> ReservationStore:
        return self._store

    # --- Draft -> Summary ---

    def prepare_summary(
        self,
        ctx: RequestContext,
        request: BookingRequest,
        abort_on_promo_error: bool = False,
        today: date | None = None,
        now: datetime | None = None,
    ) -> Quote:
        """Validate and price a selection, and hold it under a draft token.

        A promo code that fails validation is dropped and reported in
        ``promo_error`` unless ``abort_on_promo_error`` is set.
        """
        now = now or datetime.now(timezone.utc)
        if ctx.role is not ActorKind.GUEST or request.guest_id != ctx.actor_id:
            raise ValidationError("Bookings can only be made by the guest themselves")

        price, check_in, check_out, promo_error = self._price(request, abort_on_promo_error, today)

        if not self._index.is_range_available(request.property_id, check_in, check_out):
            raise ConflictError("Selected dates are not available")

        token = secrets.token_urlsafe(24)
        expires_at = now + self._draft_ttl
        session = get_session()
        try:
            session.add(BookingDraft(
                token=token,
                guest_id=request.guest_id,
                property_id=request.property_id,
                payload=_request_to_payload(request, price, abort_on_promo_error),
                expires_at=utc_naive(expires_at),
            ))
            session.commit()
        finally:
            session.close()

        logger.info(
            "Summary for guest %s on property %s: %s..%s total %s %s",
            request.guest_id, request.property_id, check_in, check_out, price.final_total, price.currency,
        )
        return Quote(
            token=token,
            status=BookingStatus.SUMMARY,
            check_in=check_in,
            check_out=check_out,
            price=price,
            expires_at=expires_at,
            promo_error=promo_error,
        )

    def _price(
        self,
        request: BookingRequest,
        abort_on_promo_error: bool,
        today: date | None,
    ) -> tuple[PriceBreakdown, date, date, str | None]:
        session = get_session()
        try:
            prop = session.get(Property, request.property_id)
            if not prop:
                raise NotFoundError(f"Property {request.property_id} not found")
            profile = load_profile(prop)
        finally:
            session.close()

        check_in, check_out = validate_request(profile, request, today)

        promo: AppliedPromo | None = None
        promo_error = None
        if request.promo_code:
            try:
                promo = self._promos.validate_for_stay(
                    request.promo_code, request.guest_id, check_in, check_out, today
                )
            except PromotionError as exc:
                if abort_on_promo_error:
                    raise
                logger.info("Promo %r dropped for guest %s: %s", request.promo_code, request.guest_id, exc)
                promo_error = exc.code

        price = self._pricing.quote(
            profile,
            request.rental_type,
            check_in,
            check_out,
            duration_months=request.duration_months,
            promo=promo,
        )
        if price.final_total <= 0:
            raise PricingError("Booking total must be greater than zero")
        return price, check_in, check_out, promo_error

    # --- Summary -> PaymentPending / Confirmed ---

    def submit(
        self,
        ctx: RequestContext,
        token: str,
        now: datetime | None = None,
        today: date | None = None,
    ) -> SubmitResult:
        """Commit a held selection. Card bookings also open a payment page."""
        now = now or datetime.now(timezone.utc)
        request, expected_total, abort_on_promo_error = self._load_draft(ctx, token, now)

        price, _, _, _ = self._price(request, abort_on_promo_error, today)
        if price.final_total != expected_total:
            self._discard_draft(token)
            raise ValidationError(
                f"Price changed from {expected_total} to {price.final_total}, please review the new summary",
                code="price_changed",
            )

        if request.payment_method is PaymentMethod.CASH:
            status = BookingStatus.CONFIRMED
        else:
            status = BookingStatus.PAYMENT_PENDING

        booking = self._store.create_booking(request, price, status, ctx.actor, today=today)
        self._discard_draft(token)

        if status is BookingStatus.CONFIRMED:
            return SubmitResult(booking=booking)

        try:
            initiation = self._gateway.initiate(
                price.final_total,
                price.currency,
                {
                    "booking_id": booking.id,
                    "reference": booking.reference,
                    "description": f"Stay {booking.check_in}..{booking.check_out} at property {booking.property_id}",
                },
            )
        except PaymentError:
            logger.exception("Could not start payment for booking %s", booking.reference)
            cancelled = self._store.cancel(booking.id, Actor.system(), reason="payment initiation failed", now=now)
            self._bus.publish(booking_event(EventType.PAYMENT_FAILED, cancelled, reason="initiation_failed"))
            raise

        booking = self._store.attach_payment(booking.id, initiation.transaction_ref)
        self._bus.publish(booking_event(
            EventType.PAYMENT_INITIATED, booking, transaction_ref=initiation.transaction_ref, amount=price.final_total
        ))
        return SubmitResult(booking=booking, redirect_url=initiation.redirect_url)

    def _load_draft(self, ctx: RequestContext, token: str, now: datetime) -> tuple[BookingRequest, int, bool]:
        session = get_session()
        try:
            draft = session.get(BookingDraft, token)
            if not draft or draft.guest_id != ctx.actor_id:
                raise NotFoundError("Booking summary not found")
            if draft.expires_at < utc_naive(now):
                session.delete(draft)
                session.commit()
                raise ValidationError("Booking summary has expired, please start again", code="draft_expired")
            data = json.loads(draft.payload)
        finally:
            session.close()
        return _request_from_payload(data), data["final_total"], data.get("abort_on_promo_error", False)

    def _discard_draft(self, token: str) -> None:
        session = get_session()
        try:
            session.query(BookingDraft).filter(BookingDraft.token == token).delete()
            session.commit()
        finally:
            session.close()

    def purge_expired_drafts(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        session = get_session()
        try:
            count = (
                session.query(BookingDraft)
                .filter(BookingDraft.expires_at < utc_naive(now))
                .delete()
            )
            session.commit()
        finally:
            session.close()
        if count:
            logger.info("Purged %d expired booking summaries", count)
        return count

    # --- PaymentPending -> Confirmed / Cancelled ---

    def handle_payment_result(
        self,
        transaction_ref: str,
        status: PaymentStatus,
        now: datetime | None = None,
    ) -> Booking:
        """Apply a payment result the gateway itself reported. Repeated results are ignored."""
        booking = self._store.find_by_transaction(transaction_ref)
        if status is PaymentStatus.PENDING:
            return booking

        if status is PaymentStatus.APPROVED:
            outcome = self._store.settle_payment(booking.id, BookingStatus.CONFIRMED, reason="payment approved", now=now)
        else:
            outcome = self._store.settle_payment(booking.id, BookingStatus.CANCELLED, reason="payment declined", now=now)

        if not outcome.changed:
            logger.info(
                "Ignoring %s result for booking %s already %s",
                status.value, outcome.booking.reference, outcome.booking.status,
            )
        elif status is PaymentStatus.APPROVED:
            self._bus.publish(booking_event(
                EventType.PAYMENT_CONFIRMED, outcome.booking, transaction_ref=transaction_ref
            ))
        else:
            self._bus.publish(booking_event(
                EventType.PAYMENT_FAILED, outcome.booking, transaction_ref=transaction_ref, reason="declined"
            ))
        return outcome.booking

    def verify_payment(self, transaction_ref: str, now: datetime | None = None) -> Booking:
        """Handle a gateway notification by asking the gateway for the result.

        The notification body is unauthenticated, so only its transaction
        reference is used.
        """
        booking = self._store.find_by_transaction(transaction_ref)
        if booking.status != BookingStatus.PAYMENT_PENDING.value:
            return booking
        result = self._gateway.query(transaction_ref)
        if result.transaction_ref != transaction_ref:
            raise PaymentGatewayError(
                f"Gateway answered for transaction {result.transaction_ref}, expected {transaction_ref}"
            )
        return self.handle_payment_result(transaction_ref, result.status, now=now)

    def refresh_payment(self, ctx: RequestContext, booking_id: int, now: datetime | None = None) -> Booking:
        """Poll the gateway for a guest returning from the payment page."""
        booking = self._owned(ctx, booking_id)
        if booking.status != BookingStatus.PAYMENT_PENDING.value or not booking.transaction_ref:
            return booking
        result = self._gateway.query(booking.transaction_ref)
        booking = self.handle_payment_result(booking.transaction_ref, result.status, now=now)
        if result.status is PaymentStatus.DECLINED:
            raise PaymentDeclinedError(result.message or "Payment was declined")
        return booking

    # --- Cancellation ---

    def get_booking(self, ctx: RequestContext, booking_id: int) -> Booking:
        return self._owned(ctx, booking_id)

    def cancel(
        self,
        ctx: RequestContext,
        booking_id: int,
        reason: str | None = None,
        accept_penalty: bool = False,
        now: datetime | None = None,
    ) -> Booking:
        self._owned(ctx, booking_id)
        return self._store.cancel(
            booking_id, ctx.actor, reason=reason, now=now, accept_penalty=accept_penalty
        )

    def _owned(self, ctx: RequestContext, booking_id: int) -> Booking:
        booking = self._store.get(booking_id)
        owner = booking.host_id if ctx.role is ActorKind.HOST else booking.guest_id
        if ctx.role is ActorKind.SYSTEM or owner != ctx.actor_id:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking
