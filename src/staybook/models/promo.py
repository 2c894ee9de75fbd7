"""Promotional code and per-account grant models."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staybook.database import Base


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)  # Percent off
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    relative_expiry_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allow_multi_account: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    grants: Mapped[list["PromoGrant"]] = relationship(back_populates="promo_code")

    def __repr__(self) -> str:
        return f"<PromoCode code={self.code!r} value={self.value}%>"


class PromoGrant(Base):
    """A promo code applied to a guest account."""

    __tablename__ = "promo_grants"
    __table_args__ = (
        UniqueConstraint("promo_code_id", "guest_id", name="uq_promo_grants_code_guest"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    promo_code_id: Mapped[int] = mapped_column(ForeignKey("promo_codes.id"), nullable=False)
    guest_id: Mapped[int] = mapped_column(Integer, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
    # Touched by every booking that redeems the code; the write doubles as its lock
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    promo_code: Mapped["PromoCode"] = relationship(back_populates="grants")
