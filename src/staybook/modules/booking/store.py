"""Transactional persistence boundary for bookings."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from staybook.config import get_section
from staybook.database import get_session
from staybook.errors import BookingError, ConflictError, NotFoundError, PersistenceError, PricingError, ValidationError
from staybook.events import EventBus, EventType, booking_event, event_bus
from staybook.models.booking import Booking, BookingAudit, BookingNight
from staybook.models.property import Property
from staybook.modules.availability.conflicts import ConflictChecker
from staybook.modules.availability.index import AvailabilityIndex, availability_index
from staybook.modules.booking.state import (
    TERMINAL,
    Actor,
    BookingStateMachine,
    BookingStatus,
    PenaltyContext,
    checkin_instant,
)
from staybook.modules.booking.validation import validate_request
from staybook.modules.pricing.engine import PriceBreakdown
from staybook.modules.promotions.codes import PromoCodeProvider
from staybook.terms import BookingRequest, RentalType, iter_nights, load_profile

logger = logging.getLogger(__name__)

INITIAL_STATUSES = (BookingStatus.PAYMENT_PENDING, BookingStatus.CONFIRMED)


def utc_naive(dt: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _new_reference() -> str:
    return f"BK-{secrets.token_hex(4).upper()}"


@dataclass(frozen=True)
class TransitionOutcome:
    booking: Booking
    changed: bool
    penalty: PenaltyContext | None = None


class ReservationStore:
    """The only component that writes bookings.

    ``create_booking`` re-runs validation and the conflict check inside the
    insert transaction and claims one ``booking_nights`` row per night. The
    unique ``(property_id, night)`` constraint serializes racing commits:
    whichever transaction commits second fails and surfaces as
    ``ConflictError``.
    """

    def __init__(
        self,
        conflicts: ConflictChecker | None = None,
        promos: PromoCodeProvider | None = None,
        state_machine: BookingStateMachine | None = None,
        index: AvailabilityIndex | None = None,
        bus: EventBus | None = None,
        retry_backoff: float = 0.2,
    ) -> None:
        self._conflicts = conflicts or ConflictChecker()
        self._promos = promos or PromoCodeProvider()
        self._machine = state_machine or BookingStateMachine()
        self._index = index or availability_index
        self._bus = bus or event_bus
        self._retry_backoff = retry_backoff

    # --- Creation ---

    def create_booking(
        self,
        request: BookingRequest,
        price: PriceBreakdown,
        status: BookingStatus,
        actor: Actor,
        today: date | None = None,
    ) -> Booking:
        """Validate and insert a booking atomically; raises ``ConflictError`` on a lost race."""
        if status not in INITIAL_STATUSES:
            raise ValueError(f"Bookings cannot be created as {status.value}")
        self._machine.assert_transition(BookingStatus.SUMMARY, status)
        if price.final_total <= 0:
            raise PricingError("Booking total must be greater than zero")

        booking = self._with_retry(
            "create booking",
            lambda session: self._insert(session, request, price, status, actor, today),
        )
        self._index.invalidate(request.property_id)
        logger.info(
            "Booking %s created for property %s: %s..%s (%s)",
            booking.reference, booking.property_id, booking.check_in, booking.check_out, booking.status,
        )
        self._bus.publish(booking_event(EventType.BOOKING_CREATED, booking, rental_type=booking.rental_type))
        return booking

    def _insert(
        self,
        session: Session,
        request: BookingRequest,
        price: PriceBreakdown,
        status: BookingStatus,
        actor: Actor,
        today: date | None,
    ) -> Booking:
        prop = (
            session.query(Property)
            .filter(Property.id == request.property_id)
            .with_for_update()
            .first()
        )
        if not prop:
            raise NotFoundError(f"Property {request.property_id} not found")

        profile = load_profile(prop)
        check_in, check_out = validate_request(profile, request, today)

        if self._conflicts.has_conflict(session, prop.id, check_in, check_out):
            raise ConflictError("Selected dates are no longer available")
        if self._conflicts.has_blocked_dates(session, prop.id, check_in, check_out):
            raise ConflictError("Selected dates have been blocked by the host")
        if price.promo is not None:
            self._promos.lock_grant(session, price.promo.promo_code_id, request.guest_id)
            self._promos.ensure_not_in_use(
                session, price.promo.promo_code_id, request.guest_id, check_in, check_out
            )

        booking = Booking(
            reference=_new_reference(),
            property_id=prop.id,
            guest_id=request.guest_id,
            host_id=prop.host_id,
            check_in=check_in,
            check_out=check_out,
            rental_type=request.rental_type.value,
            duration_months=request.duration_months if request.rental_type is RentalType.MONTHLY else None,
            guests=request.guests,
            status=status.value,
            payment_method=request.payment_method.value,
            total_price=float(price.final_total),
            contract_value=float(price.contract_total) if price.contract_total is not None else None,
            discount=float(price.discount),
            currency=price.currency,
            promo_code_id=price.promo.promo_code_id if price.promo else None,
        )
        session.add(booking)
        session.flush()
        session.add_all(
            BookingNight(booking_id=booking.id, property_id=prop.id, night=night)
            for night in iter_nights(check_in, check_out)
        )
        session.add(BookingAudit(
            booking_id=booking.id,
            from_status=BookingStatus.SUMMARY.value,
            to_status=status.value,
            actor=actor.label,
            reason="created",
        ))
        session.commit()
        return booking

    def _with_retry(self, label: str, operation):
        """Run ``operation(session)`` in its own transaction, retrying once on storage errors."""
        for attempt in (1, 2):
            session = get_session()
            try:
                return operation(session)
            except IntegrityError as exc:
                session.rollback()
                if "booking_nights" in str(exc.orig):
                    logger.info("Lost the race to %s: %s", label, exc.orig)
                    raise ConflictError("Selected dates are no longer available") from exc
                logger.warning("Integrity error during %s (attempt %d): %s", label, attempt, exc.orig)
                last_error: Exception = exc
            except OperationalError as exc:
                session.rollback()
                logger.warning("Storage error during %s (attempt %d): %s", label, attempt, exc.orig)
                last_error = exc
            except BookingError:
                session.rollback()
                raise
            finally:
                session.close()
            if attempt == 1:
                time.sleep(self._retry_backoff)
        logger.error("Giving up on %s after retry", label)
        raise PersistenceError(f"Could not {label}, please try again") from last_error

    # --- Status changes ---

    def get(self, booking_id: int) -> Booking:
        session = get_session()
        try:
            booking = session.get(Booking, booking_id)
            if not booking:
                raise NotFoundError(f"Booking {booking_id} not found")
            return booking
        finally:
            session.close()

    def find_by_transaction(self, transaction_ref: str) -> Booking:
        session = get_session()
        try:
            booking = (
                session.query(Booking)
                .filter(Booking.transaction_ref == transaction_ref)
                .first()
            )
            if not booking:
                raise NotFoundError(f"No booking for transaction {transaction_ref}")
            return booking
        finally:
            session.close()

    def update_status(
        self,
        booking_id: int,
        new_status: BookingStatus,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
        accept_penalty: bool = False,
    ) -> Booking:
        """Move a booking to ``new_status`` and write an audit row.

        A failed guard leaves the booking untouched and raises the typed
        rejection.
        """
        return self._apply(booking_id, new_status, actor, reason, now, accept_penalty=accept_penalty).booking

    def settle_payment(
        self, booking_id: int, new_status: BookingStatus, reason: str, now: datetime | None = None
    ) -> TransitionOutcome:
        """Resolve a booking awaiting payment as the system actor.

        The pending check runs under the booking's row lock, so a result that
        arrives after the booking was already settled comes back with
        ``changed=False`` instead of an invalid transition.
        """
        return self._apply(
            booking_id, new_status, Actor.system(), reason, now, expected=BookingStatus.PAYMENT_PENDING
        )

    def _apply(
        self,
        booking_id: int,
        new_status: BookingStatus,
        actor: Actor,
        reason: str | None,
        now: datetime | None,
        accept_penalty: bool = False,
        expected: BookingStatus | None = None,
    ) -> TransitionOutcome:
        now = now or datetime.now(timezone.utc)
        outcome = self._with_retry(
            f"update booking {booking_id}",
            lambda session: self._transition(
                session, booking_id, new_status, actor, reason, now, accept_penalty, expected
            ),
        )
        booking = outcome.booking
        if not outcome.changed:
            logger.info(
                "Booking %s is %s, not %s; leaving it as is",
                booking.reference, booking.status, expected.value if expected else None,
            )
            return outcome

        if outcome.penalty is not None:
            self._machine.apply_penalty(outcome.penalty)
        self._index.invalidate(booking.property_id)
        logger.info("Booking %s -> %s by %s", booking.reference, booking.status, actor.label)
        self._bus.publish(booking_event(EventType.BOOKING_STATUS_CHANGED, booking, actor=actor.label))
        if new_status is BookingStatus.CANCELLED:
            self._bus.publish(booking_event(
                EventType.BOOKING_CANCELLED,
                booking,
                cancelled_by=booking.cancelled_by,
                reason=booking.cancellation_reason,
                penalty_applied=booking.penalty_applied,
            ))
        return outcome

    def _transition(
        self,
        session: Session,
        booking_id: int,
        new_status: BookingStatus,
        actor: Actor,
        reason: str | None,
        now: datetime,
        accept_penalty: bool,
        expected: BookingStatus | None,
    ) -> TransitionOutcome:
        booking = (
            session.query(Booking)
            .filter(Booking.id == booking_id)
            .with_for_update()
            .first()
        )
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")

        current = BookingStatus(booking.status)
        if expected is not None and current is not expected:
            return TransitionOutcome(booking, changed=False)
        self._machine.assert_transition(current, new_status)
        today = now.date()

        penalty = None
        if new_status is BookingStatus.CANCELLED:
            profile = load_profile(booking.prop)
            penalty = self._machine.guard_cancel(
                booking.id,
                checkin_instant(booking.check_in, profile.checkin_time),
                actor,
                booking.total_price,
                now=now,
                accept_penalty=accept_penalty,
            )
            booking.cancellation_reason = reason
            booking.cancelled_at = utc_naive(now)
            booking.cancelled_by = actor.label
            booking.penalty_applied = penalty is not None
        elif new_status is BookingStatus.CHECKED_IN:
            self._machine.guard_check_in(booking.check_in, booking.check_out, today)
        elif new_status is BookingStatus.COMPLETED:
            self._machine.guard_complete(booking.check_out, today)

        booking.status = new_status.value
        if new_status in TERMINAL:
            # Terminal bookings no longer hold the calendar
            for night in list(booking.claimed_nights):
                session.delete(night)

        session.add(BookingAudit(
            booking_id=booking.id,
            from_status=current.value,
            to_status=new_status.value,
            actor=actor.label,
            reason=reason,
        ))
        session.commit()
        return TransitionOutcome(booking, changed=True, penalty=penalty)


    def cancel(
        self,
        booking_id: int,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
        accept_penalty: bool = False,
    ) -> Booking:
        return self.update_status(
            booking_id, BookingStatus.CANCELLED, actor, reason=reason, now=now, accept_penalty=accept_penalty
        )

    def attach_payment(self, booking_id: int, transaction_ref: str) -> Booking:
        """Record the gateway transaction for a booking awaiting payment."""
        def _attach(session: Session) -> Booking:
            booking = session.get(Booking, booking_id)
            if not booking:
                raise NotFoundError(f"Booking {booking_id} not found")
            if booking.status != BookingStatus.PAYMENT_PENDING.value:
                raise ValidationError(f"Booking {booking.reference} is not awaiting payment")
            booking.transaction_ref = transaction_ref
            session.commit()
            return booking

        return self._with_retry(f"attach payment to booking {booking_id}", _attach)

    def annotate(self, booking_id: int, actor: Actor, note: str) -> BookingAudit:
        """Add an audit note without changing status; allowed on terminal bookings."""
        def _annotate(session: Session) -> BookingAudit:
            booking = session.get(Booking, booking_id)
            if not booking:
                raise NotFoundError(f"Booking {booking_id} not found")
            entry = BookingAudit(
                booking_id=booking.id,
                from_status=booking.status,
                to_status=booking.status,
                actor=actor.label,
                reason=note,
            )
            session.add(entry)
            session.commit()
            return entry

        return self._with_retry(f"annotate booking {booking_id}", _annotate)

    def audit_trail(self, booking_id: int) -> list[BookingAudit]:
        session = get_session()
        try:
            return (
                session.query(BookingAudit)
                .filter(BookingAudit.booking_id == booking_id)
                .order_by(BookingAudit.id)
                .all()
            )
        finally:
            session.close()

    # --- Sweeps driven by the host application's scheduler ---

    def sweep_abandoned_payments(
        self, timeout_minutes: float | None = None, now: datetime | None = None
    ) -> list[int]:
        """Cancel bookings that have waited on the payment provider too long."""
        now = now or datetime.now(timezone.utc)
        if timeout_minutes is None:
            timeout_minutes = get_section("booking")["payment_timeout_minutes"]
        cutoff = utc_naive(now - timedelta(minutes=timeout_minutes))

        session = get_session()
        try:
            stale_ids = [
                row[0]
                for row in session.query(Booking.id)
                .filter(
                    Booking.status == BookingStatus.PAYMENT_PENDING.value,
                    Booking.created_at < cutoff,
                )
                .all()
            ]
        finally:
            session.close()

        cancelled = []
        for booking_id in stale_ids:
            # Skipped when the payment was confirmed between the read and the cancel
            outcome = self.settle_payment(
                booking_id, BookingStatus.CANCELLED, reason="payment not completed in time", now=now
            )
            if outcome.changed:
                cancelled.append(booking_id)
        if cancelled:
            logger.info("Abandoned-payment sweep cancelled %d bookings", len(cancelled))
        return cancelled

    def advance_stays(self, today: date | None = None) -> dict[str, int]:
        """Check in stays that have started and complete those past check-out."""
        today = today or date.today()
        now = datetime.combine(today, datetime.min.time(), tzinfo=timezone.utc)
        session = get_session()
        try:
            to_complete = [
                row[0]
                for row in session.query(Booking.id)
                .filter(
                    Booking.status.in_([BookingStatus.CONFIRMED.value, BookingStatus.CHECKED_IN.value]),
                    Booking.check_out <= today,
                )
                .all()
            ]
            to_check_in = [
                row[0]
                for row in session.query(Booking.id)
                .filter(
                    Booking.status == BookingStatus.CONFIRMED.value,
                    Booking.check_in <= today,
                    Booking.check_out > today,
                )
                .all()
            ]
        finally:
            session.close()

        counts = {"checked_in": 0, "completed": 0}
        for booking_id in to_complete:
            self.update_status(booking_id, BookingStatus.COMPLETED, Actor.system(), reason="stay ended", now=now)
            counts["completed"] += 1
        for booking_id in to_check_in:
            self.update_status(booking_id, BookingStatus.CHECKED_IN, Actor.system(), reason="stay started", now=now)
            counts["checked_in"] += 1
        return counts
