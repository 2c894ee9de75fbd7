"""Shared test fixtures."""

from __future__ import annotations

import os
from contextlib import ExitStack
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite://"  # In-memory DB for tests

from staybook.database import Base
from staybook.events import EventBus
from staybook.models.promo import PromoCode
from staybook.models.property import Property
from staybook.modules.availability.index import AvailabilityIndex, availability_index
from staybook.modules.booking.flow import BookingService
from staybook.modules.booking.store import ReservationStore
from staybook.modules.payments.gateway import PaymentInitiation, PaymentResult, PaymentStatus
from staybook.modules.promotions.codes import PromoCodeProvider

# Import all models to register them
import staybook.models.booking  # noqa: F401

# Fixed clock for every test that books; far enough ahead to never be "past"
TODAY = date(2030, 3, 1)
NOW = datetime(2030, 3, 1, 9, 0, tzinfo=timezone.utc)

# Every module that opens its own session
SESSION_USERS = [
    "staybook.modules.availability.blocks",
    "staybook.modules.availability.index",
    "staybook.modules.booking.flow",
    "staybook.modules.booking.store",
    "staybook.modules.promotions.codes",
]


def make_session_factory(url: str = "sqlite://"):
    """Engine + session factory; in-memory databases share one connection."""
    kwargs = {"echo": False, "connect_args": {"check_same_thread": False}}
    if url == "sqlite://":
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, expire_on_commit=False)


def patch_sessions(stack: ExitStack, factory) -> None:
    for module in SESSION_USERS:
        stack.enter_context(patch(f"{module}.get_session", side_effect=lambda: factory()))


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test, wired into every module."""
    engine, factory = make_session_factory()
    availability_index.invalidate()
    with ExitStack() as stack:
        patch_sessions(stack, factory)
        yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sample_property(db_session: Session) -> Property:
    """A flat offering both nightly and monthly stays."""
    prop = Property(
        host_id=7,
        title="Nile View Flat",
        rental_types="daily,monthly",
        nightly_rate=1000.0,
        monthly_rate=6000.0,
        min_nights=1,
        min_months=1,
        max_guests=4,
        accepts_cash=True,
        checkin_time="15:00",
        checkout_time="11:00",
    )
    db_session.add(prop)
    db_session.commit()
    return prop


@pytest.fixture
def promo_code(db_session: Session) -> PromoCode:
    promo = PromoCode(code="WELCOME10", value=10.0, expiry_date=date(2030, 12, 31), allow_multi_account=True)
    db_session.add(promo)
    db_session.commit()
    return promo


@pytest.fixture
def event_bus():
    """Create a fresh event bus for each test."""
    return EventBus()


@pytest.fixture
def index() -> AvailabilityIndex:
    return AvailabilityIndex(cache_seconds=0)


@pytest.fixture
def store(session_factory, index, event_bus) -> ReservationStore:
    return ReservationStore(index=index, bus=event_bus, retry_backoff=0)


@pytest.fixture
def gateway():
    gw = MagicMock()
    gw.initiate.return_value = PaymentInitiation(
        redirect_url="https://pay.example.test/page/TST2030", transaction_ref="TST2030"
    )
    gw.query.return_value = PaymentResult(transaction_ref="TST2030", status=PaymentStatus.PENDING)
    return gw


@pytest.fixture
def service(store, index, event_bus, gateway) -> BookingService:
    return BookingService(
        gateway=gateway,
        store=store,
        promos=PromoCodeProvider(),
        index=index,
        bus=event_bus,
    )
