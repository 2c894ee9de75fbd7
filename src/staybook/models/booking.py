"""Booking, claimed-night, audit and draft models."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staybook.database import Base

ACTIVE_STATUSES = ("pending", "confirmed", "checked_in")
TERMINAL_STATUSES = ("cancelled", "completed")


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), nullable=False)
    guest_id: Mapped[int] = mapped_column(Integer, nullable=False)
    host_id: Mapped[int] = mapped_column(Integer, nullable=False)
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)
    rental_type: Mapped[str] = mapped_column(String(20), nullable=False)  # daily, monthly
    duration_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    guests: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, confirmed, checked_in, cancelled, completed
    payment_method: Mapped[str] = mapped_column(String(20), default="card")  # card, cash
    transaction_ref: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)
    contract_value: Mapped[float | None] = mapped_column(Float, nullable=True)  # Full monthly contract, disclosure only
    discount: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(3), default="EGP")
    promo_code_id: Mapped[int | None] = mapped_column(ForeignKey("promo_codes.id"), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    penalty_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    prop: Mapped["Property"] = relationship(back_populates="bookings")  # noqa: F821
    claimed_nights: Mapped[list["BookingNight"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan"
    )
    audit_entries: Mapped[list["BookingAudit"]] = relationship(
        back_populates="booking", order_by="BookingAudit.id"
    )

    def __repr__(self) -> str:
        return (
            f"<Booking id={self.id} ref={self.reference} property_id={self.property_id} "
            f"{self.check_in}..{self.check_out} status={self.status!r}>"
        )

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class BookingNight(Base):
    """One night held by an active booking.

    The unique (property_id, night) pair is the storage-level exclusion
    constraint: two active bookings can never claim the same night.
    """

    __tablename__ = "booking_nights"
    __table_args__ = (
        UniqueConstraint("property_id", "night", name="uq_booking_nights_property_night"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), nullable=False)
    night: Mapped[date] = mapped_column(Date, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="claimed_nights")


class BookingAudit(Base):
    __tablename__ = "booking_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)  # guest:<id>, host:<id>, system
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    booking: Mapped["Booking"] = relationship(back_populates="audit_entries")

    def __repr__(self) -> str:
        return f"<BookingAudit booking_id={self.booking_id} {self.from_status}->{self.to_status} by {self.actor}>"


class BookingDraft(Base):
    """Priced selection awaiting guest confirmation, addressed by token."""

    __tablename__ = "booking_drafts"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    guest_id: Mapped[int] = mapped_column(Integer, nullable=False)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON blob
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
