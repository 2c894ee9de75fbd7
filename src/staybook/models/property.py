"""Property and host calendar block models."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staybook.database import Base


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    rental_types: Mapped[str] = mapped_column(String(50), default="daily")  # daily, monthly, daily,monthly
    nightly_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    monthly_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_nights: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_guests: Mapped[int] = mapped_column(Integer, default=2)
    accepts_cash: Mapped[bool] = mapped_column(Boolean, default=False)
    checkin_time: Mapped[str] = mapped_column(String(10), default="15:00")
    checkout_time: Mapped[str] = mapped_column(String(10), default="11:00")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    bookings: Mapped[list["Booking"]] = relationship(back_populates="prop")  # noqa: F821
    blocks: Mapped[list["AvailabilityBlock"]] = relationship(back_populates="prop")

    def __repr__(self) -> str:
        return f"<Property id={self.id} title={self.title!r}>"


class AvailabilityBlock(Base):
    """A single date the host has taken off the calendar."""

    __tablename__ = "availability_blocks"
    __table_args__ = (
        UniqueConstraint("property_id", "blocked_date", name="uq_availability_blocks_property_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), nullable=False)
    blocked_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    prop: Mapped["Property"] = relationship(back_populates="blocks")

    def __repr__(self) -> str:
        return f"<AvailabilityBlock property_id={self.property_id} date={self.blocked_date}>"
