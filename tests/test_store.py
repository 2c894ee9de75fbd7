"""Tests for the reservation store: atomic commits, transitions and sweeps."""

import threading
from contextlib import ExitStack
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from staybook.errors import (
    CancellationWindowError,
    CapacityExceededError,
    ConflictError,
    InvalidTransitionError,
    PersistenceError,
    PromoCodeInUseError,
)
from staybook.events import EventType
from staybook.models.booking import Booking, BookingAudit, BookingNight
from staybook.models.promo import PromoCode, PromoGrant
from staybook.models.property import AvailabilityBlock, Property
from staybook.modules.booking.state import Actor, ActorKind, BookingStateMachine, BookingStatus
from staybook.modules.booking.store import ReservationStore
from staybook.modules.pricing.engine import AppliedPromo, PricingCalculator
from staybook.terms import BookingRequest, PaymentMethod, RentalType, load_profile

from conftest import TODAY, make_session_factory, patch_sessions

GUEST = Actor(ActorKind.GUEST, 5)


def _request(prop: Property, check_in=date(2030, 4, 1), check_out=date(2030, 4, 4), guest_id=5, **kwargs):
    return BookingRequest(
        property_id=prop.id, guest_id=guest_id, rental_type=RentalType.DAILY, guests=2,
        check_in=check_in, check_out=check_out, **kwargs,
    )


def _price(prop: Property, request: BookingRequest):
    check_in, check_out = request.stay_range()
    return PricingCalculator().quote(
        load_profile(prop), request.rental_type, check_in, check_out, duration_months=request.duration_months
    )


def _book(store: ReservationStore, prop: Property, status=BookingStatus.PAYMENT_PENDING, **kwargs) -> Booking:
    request = _request(prop, **kwargs)
    return store.create_booking(request, _price(prop, request), status, GUEST, today=TODAY)


def _count(session_factory, model, **filters) -> int:
    session = session_factory()
    try:
        return session.query(model).filter_by(**filters).count()
    finally:
        session.close()


def test_create_booking_claims_nights(store, sample_property, session_factory, event_bus):
    created = []
    event_bus.subscribe(EventType.BOOKING_CREATED, created.append)

    booking = _book(store, sample_property)

    assert booking.status == "pending"
    assert booking.reference.startswith("BK-")
    assert booking.total_price == 3450
    assert booking.host_id == 7
    assert _count(session_factory, BookingNight, booking_id=booking.id) == 3
    audit = store.audit_trail(booking.id)
    assert [(a.from_status, a.to_status) for a in audit] == [("summary", "pending")]
    assert len(created) == 1
    assert created[0].data["booking_id"] == booking.id


def test_overlapping_booking_conflicts(store, sample_property):
    _book(store, sample_property)
    with pytest.raises(ConflictError):
        _book(store, sample_property, check_in=date(2030, 4, 3), check_out=date(2030, 4, 6), guest_id=6)


def test_back_to_back_bookings_allowed(store, sample_property):
    _book(store, sample_property)
    second = _book(store, sample_property, check_in=date(2030, 4, 4), check_out=date(2030, 4, 6), guest_id=6)
    assert second.check_in == date(2030, 4, 4)


def test_host_block_conflicts(store, sample_property, db_session: Session):
    db_session.add(AvailabilityBlock(property_id=sample_property.id, blocked_date=date(2030, 4, 2), created_by=7))
    db_session.commit()
    with pytest.raises(ConflictError):
        _book(store, sample_property)


def test_validation_rerun_inside_transaction(store, sample_property, session_factory):
    request = BookingRequest(
        property_id=sample_property.id, guest_id=5, rental_type=RentalType.DAILY, guests=9,
        check_in=date(2030, 4, 1), check_out=date(2030, 4, 4),
    )
    with pytest.raises(CapacityExceededError):
        store.create_booking(request, _price(sample_property, request), BookingStatus.PAYMENT_PENDING, GUEST, today=TODAY)
    assert _count(session_factory, Booking) == 0


def test_cannot_create_in_non_initial_status(store, sample_property):
    with pytest.raises(ValueError):
        _book(store, sample_property, status=BookingStatus.COMPLETED)


def test_cancel_releases_nights(store, sample_property, session_factory):
    booking = _book(store, sample_property)
    cancelled = store.cancel(booking.id, GUEST, reason="plans changed", now=datetime(2030, 3, 1, tzinfo=timezone.utc))

    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_by == "guest:5"
    assert cancelled.cancellation_reason == "plans changed"
    assert cancelled.penalty_applied is False
    assert _count(session_factory, BookingNight, booking_id=booking.id) == 0

    rebooked = _book(store, sample_property, guest_id=6)
    assert rebooked.status == "pending"


def test_late_cancel_rejected_then_penalized(store, sample_property):
    booking = _book(store, sample_property, status=BookingStatus.CONFIRMED, payment_method=PaymentMethod.CASH)
    two_hours_before = datetime(2030, 4, 1, 13, 0, tzinfo=timezone.utc)

    with pytest.raises(CancellationWindowError):
        store.cancel(booking.id, GUEST, now=two_hours_before)
    assert store.get(booking.id).status == "confirmed"

    cancelled = store.cancel(booking.id, GUEST, reason="emergency", now=two_hours_before, accept_penalty=True)
    assert cancelled.status == "cancelled"
    assert cancelled.penalty_applied is True


def test_terminal_bookings_are_immutable(store, sample_property):
    booking = _book(store, sample_property)
    store.cancel(booking.id, Actor.system(), reason="payment declined")

    with pytest.raises(InvalidTransitionError):
        store.update_status(booking.id, BookingStatus.CONFIRMED, Actor.system())

    note = store.annotate(booking.id, Actor(ActorKind.HOST, 7), "guest called about refund")
    assert note.from_status == note.to_status == "cancelled"
    assert len(store.audit_trail(booking.id)) == 3


def test_attach_payment(store, sample_property):
    booking = _book(store, sample_property)
    store.attach_payment(booking.id, "TST0001")
    assert store.find_by_transaction("TST0001").id == booking.id


def test_sweep_cancels_abandoned_payments(store, sample_property, session_factory):
    pending = _book(store, sample_property)
    cash = _book(
        store, sample_property, status=BookingStatus.CONFIRMED, payment_method=PaymentMethod.CASH,
        check_in=date(2030, 5, 1), check_out=date(2030, 5, 3), guest_id=6,
    )

    later = datetime.now(timezone.utc) + timedelta(minutes=45)
    assert store.sweep_abandoned_payments(timeout_minutes=30, now=later) == [pending.id]
    assert store.get(pending.id).status == "cancelled"
    assert store.get(pending.id).cancelled_by == "system"
    assert store.get(cash.id).status == "confirmed"

    # Fresh pending bookings are left alone
    fresh = _book(store, sample_property, guest_id=7)
    assert store.sweep_abandoned_payments(timeout_minutes=30) == []
    assert store.get(fresh.id).status == "pending"


def test_advance_stays(store, sample_property, session_factory):
    booking = _book(store, sample_property, status=BookingStatus.CONFIRMED, payment_method=PaymentMethod.CASH)

    assert store.advance_stays(today=date(2030, 3, 31)) == {"checked_in": 0, "completed": 0}
    assert store.advance_stays(today=date(2030, 4, 2)) == {"checked_in": 1, "completed": 0}
    assert store.get(booking.id).status == "checked_in"
    assert store.advance_stays(today=date(2030, 4, 4)) == {"checked_in": 0, "completed": 1}
    assert store.get(booking.id).status == "completed"
    assert _count(session_factory, BookingNight, booking_id=booking.id) == 0


def test_storage_error_retried_once(store, sample_property):
    original = store._insert
    calls = []

    def flaky(*args):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("INSERT INTO bookings", {}, Exception("database is locked"))
        return original(*args)

    with patch.object(store, "_insert", side_effect=flaky):
        booking = _book(store, sample_property)

    assert len(calls) == 2
    assert booking.status == "pending"


def test_storage_error_after_retry_fails_cleanly(store, sample_property, session_factory):
    error = OperationalError("INSERT INTO bookings", {}, Exception("disk I/O error"))
    with patch.object(store, "_insert", side_effect=error):
        with pytest.raises(PersistenceError):
            _book(store, sample_property)
    assert _count(session_factory, Booking) == 0


def test_concurrent_identical_requests(tmp_path, index, event_bus):
    """Two guests race for the same dates: one booking, one conflict."""
    engine, factory = make_session_factory(f"sqlite:///{tmp_path / 'race.db'}")
    session = factory()
    prop = Property(host_id=7, title="Race Flat", nightly_rate=1000.0, max_guests=4)
    session.add(prop)
    session.commit()
    session.close()

    store = ReservationStore(index=index, bus=event_bus, retry_backoff=0.01)
    barrier = threading.Barrier(2)
    results: list[object] = []
    lock = threading.Lock()

    def attempt(guest_id: int) -> None:
        request = _request(prop, guest_id=guest_id)
        price = _price(prop, request)
        barrier.wait()
        try:
            outcome = store.create_booking(request, price, BookingStatus.PAYMENT_PENDING, Actor(ActorKind.GUEST, guest_id), today=TODAY)
        except ConflictError as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    with ExitStack() as stack:
        patch_sessions(stack, factory)
        threads = [threading.Thread(target=attempt, args=(guest_id,)) for guest_id in (5, 6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

    bookings = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(bookings) == 1
    assert len(conflicts) == 1

    session = factory()
    try:
        assert session.query(Booking).count() == 1
        assert session.query(BookingNight).count() == 3
    finally:
        session.close()
    engine.dispose()


def _flaky_commit(failures: int, attempts: list):
    """Session.commit that hits a locked database ``failures`` times first."""
    original = Session.commit

    def commit(self):
        attempts.append(1)
        if len(attempts) <= failures:
            raise OperationalError("UPDATE bookings", {}, Exception("database is locked"))
        return original(self)

    return commit


def test_penalty_charged_once_when_commit_is_retried(session_factory, sample_property, index, event_bus):
    charged = []
    store = ReservationStore(
        state_machine=BookingStateMachine(penalty_hook=charged.append), index=index, bus=event_bus, retry_backoff=0
    )
    booking = _book(store, sample_property, status=BookingStatus.CONFIRMED, payment_method=PaymentMethod.CASH)
    two_hours_before = datetime(2030, 4, 1, 13, 0, tzinfo=timezone.utc)

    attempts = []
    with patch.object(Session, "commit", _flaky_commit(1, attempts)):
        cancelled = store.cancel(booking.id, GUEST, reason="emergency", now=two_hours_before, accept_penalty=True)

    assert len(attempts) == 2
    assert cancelled.penalty_applied is True
    assert len(charged) == 1
    assert charged[0].booking_id == booking.id


def test_no_penalty_when_cancellation_never_commits(session_factory, sample_property, index, event_bus):
    charged = []
    store = ReservationStore(
        state_machine=BookingStateMachine(penalty_hook=charged.append), index=index, bus=event_bus, retry_backoff=0
    )
    booking = _book(store, sample_property, status=BookingStatus.CONFIRMED, payment_method=PaymentMethod.CASH)
    two_hours_before = datetime(2030, 4, 1, 13, 0, tzinfo=timezone.utc)

    with patch.object(Session, "commit", _flaky_commit(2, [])):
        with pytest.raises(PersistenceError):
            store.cancel(booking.id, GUEST, now=two_hours_before, accept_penalty=True)

    assert charged == []
    assert store.get(booking.id).status == "confirmed"


def test_settle_payment_is_a_no_op_once_settled(store, sample_property, event_bus):
    booking = _book(store, sample_property)
    changes = []
    event_bus.subscribe(EventType.BOOKING_STATUS_CHANGED, changes.append)

    first = store.settle_payment(booking.id, BookingStatus.CONFIRMED, reason="payment approved")
    assert first.changed
    again = store.settle_payment(booking.id, BookingStatus.CONFIRMED, reason="payment approved")
    late_sweep = store.settle_payment(booking.id, BookingStatus.CANCELLED, reason="payment not completed in time")

    assert not again.changed
    assert not late_sweep.changed
    assert late_sweep.booking.status == "confirmed"
    assert len(changes) == 1
    assert len(store.audit_trail(booking.id)) == 2


def test_same_promo_raced_on_two_properties(tmp_path, index, event_bus):
    """One guest redeems one code for overlapping stays at two flats at once."""
    engine, factory = make_session_factory(f"sqlite:///{tmp_path / 'promo_race.db'}")
    session = factory()
    flats = [
        Property(host_id=7, title="Race Flat", nightly_rate=1000.0, max_guests=4),
        Property(host_id=8, title="Race Studio", nightly_rate=800.0, max_guests=4),
    ]
    promo = PromoCode(code="WELCOME10", value=10.0, expiry_date=date(2030, 12, 31))
    session.add_all([*flats, promo])
    session.flush()
    session.add(PromoGrant(promo_code_id=promo.id, guest_id=5))
    session.commit()
    applied = AppliedPromo(promo_code_id=promo.id, code=promo.code, value=promo.value)
    session.close()

    store = ReservationStore(index=index, bus=event_bus, retry_backoff=0.01)
    barrier = threading.Barrier(2)
    results: list[object] = []
    lock = threading.Lock()

    def attempt(prop: Property) -> None:
        request = _request(prop, promo_code="WELCOME10")
        price = PricingCalculator().quote(
            load_profile(prop), RentalType.DAILY, request.check_in, request.check_out, promo=applied
        )
        barrier.wait()
        try:
            outcome = store.create_booking(request, price, BookingStatus.PAYMENT_PENDING, GUEST, today=TODAY)
        except PromoCodeInUseError as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    with ExitStack() as stack:
        patch_sessions(stack, factory)
        threads = [threading.Thread(target=attempt, args=(prop,)) for prop in flats]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

    assert len([r for r in results if isinstance(r, Booking)]) == 1
    assert len([r for r in results if isinstance(r, PromoCodeInUseError)]) == 1

    session = factory()
    try:
        assert session.query(Booking).filter(Booking.promo_code_id == promo.id).count() == 1
    finally:
        session.close()
    engine.dispose()
