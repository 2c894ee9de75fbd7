"""Promotional code grants, validation and overlap exclusion."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from staybook.database import get_session
from staybook.errors import PromoCodeExpiredError, PromoCodeInUseError, PromoCodeInvalidError
from staybook.models.booking import ACTIVE_STATUSES, Booking
from staybook.models.promo import PromoCode, PromoGrant
from staybook.modules.pricing.engine import AppliedPromo

logger = logging.getLogger(__name__)


def _normalize(code: str) -> str:
    return code.strip().upper()


def promo_expiry(promo: PromoCode, granted_at: datetime | None = None) -> date | None:
    """Absolute expiry wins; otherwise count relative months from the grant."""
    if promo.expiry_date:
        return promo.expiry_date
    if promo.relative_expiry_months:
        anchor = granted_at or promo.created_at
        return (anchor + relativedelta(months=promo.relative_expiry_months)).date()
    return None


@dataclass(frozen=True)
class PromoValidation:
    promo_code_id: int
    code: str
    value: float
    expires_on: date | None

    def applied(self) -> AppliedPromo:
        return AppliedPromo(promo_code_id=self.promo_code_id, code=self.code, value=self.value)


class PromoCodeProvider:
    """Looks up codes granted to a guest and decides whether they still apply."""

    def grant(self, code: str, guest_id: int, now: datetime | None = None) -> PromoGrant:
        """Attach a code to a guest account. Re-applying the same code is a no-op."""
        now = now or datetime.now(timezone.utc)
        session = get_session()
        try:
            promo = self._lookup(session, code)
            expires_on = promo_expiry(promo, now)
            if expires_on and expires_on < now.date():
                raise PromoCodeExpiredError(f"Promo code {promo.code} expired on {expires_on}")

            grants = session.query(PromoGrant).filter(PromoGrant.promo_code_id == promo.id).all()
            for existing in grants:
                if existing.guest_id == guest_id:
                    return existing
            if grants and not promo.allow_multi_account:
                raise PromoCodeInvalidError(f"Promo code {promo.code} has already been claimed")

            grant = PromoGrant(promo_code_id=promo.id, guest_id=guest_id, granted_at=now)
            session.add(grant)
            session.commit()
            session.refresh(grant)
            logger.info("Granted promo %s to guest %s", promo.code, guest_id)
            return grant
        finally:
            session.close()

    def validate(self, code: str, guest_id: int, today: date | None = None) -> PromoValidation:
        """Return the code's value and expiry for this guest, or raise."""
        session = get_session()
        try:
            return self.validate_in(session, code, guest_id, today)
        finally:
            session.close()

    def validate_in(
        self, session: Session, code: str, guest_id: int, today: date | None = None
    ) -> PromoValidation:
        today = today or date.today()
        promo = self._lookup(session, code)
        grant = (
            session.query(PromoGrant)
            .filter(PromoGrant.promo_code_id == promo.id, PromoGrant.guest_id == guest_id)
            .first()
        )
        if grant is None:
            raise PromoCodeInvalidError(f"Promo code {promo.code} is not applied to this account")

        expires_on = promo_expiry(promo, grant.granted_at)
        if expires_on and expires_on < today:
            raise PromoCodeExpiredError(f"Promo code {promo.code} expired on {expires_on}")

        return PromoValidation(
            promo_code_id=promo.id,
            code=promo.code,
            value=promo.value,
            expires_on=expires_on,
        )

    def lock_grant(self, session: Session, promo_code_id: int, guest_id: int) -> PromoGrant:
        """Lock the guest's grant for the rest of the booking transaction.

        Bookings on different properties lock different property rows, so the
        grant is what serializes two redemptions of one code by one guest.
        """
        grant = (
            session.query(PromoGrant)
            .filter(PromoGrant.promo_code_id == promo_code_id, PromoGrant.guest_id == guest_id)
            .with_for_update()
            .first()
        )
        if grant is None:
            raise PromoCodeInvalidError("Promo code is not applied to this account")
        grant.last_used_at = datetime.now(timezone.utc).replace(tzinfo=None)
        session.flush()
        return grant

    def ensure_not_in_use(
        self,
        session: Session,
        promo_code_id: int,
        guest_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: int | None = None,
    ) -> None:
        """Reject a code already bound to this guest's active, overlapping booking."""
        query = session.query(Booking.id).filter(
            Booking.promo_code_id == promo_code_id,
            Booking.guest_id == guest_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.check_in < check_out,
            Booking.check_out > check_in,
        )
        if exclude_booking_id is not None:
            query = query.filter(Booking.id != exclude_booking_id)
        if query.first() is not None:
            raise PromoCodeInUseError("This promo code is already used by a booking on overlapping dates")

    def validate_for_stay(
        self,
        code: str,
        guest_id: int,
        check_in: date,
        check_out: date,
        today: date | None = None,
    ) -> AppliedPromo:
        """Full check used while quoting: grant, expiry and overlap exclusion."""
        session = get_session()
        try:
            validation = self.validate_in(session, code, guest_id, today)
            self.ensure_not_in_use(session, validation.promo_code_id, guest_id, check_in, check_out)
            return validation.applied()
        finally:
            session.close()

    def available_for(
        self,
        guest_id: int,
        check_in: date | None = None,
        check_out: date | None = None,
        today: date | None = None,
    ) -> list[PromoValidation]:
        """Codes on the guest's account that could be applied to these dates."""
        today = today or date.today()
        session = get_session()
        try:
            rows = (
                session.query(PromoCode, PromoGrant)
                .join(PromoGrant, PromoGrant.promo_code_id == PromoCode.id)
                .filter(PromoGrant.guest_id == guest_id)
                .order_by(PromoCode.code)
                .all()
            )
            usable = []
            for promo, grant in rows:
                expires_on = promo_expiry(promo, grant.granted_at)
                if expires_on and expires_on < today:
                    continue
                if check_in and check_out:
                    try:
                        self.ensure_not_in_use(session, promo.id, guest_id, check_in, check_out)
                    except PromoCodeInUseError:
                        continue
                usable.append(PromoValidation(promo.id, promo.code, promo.value, expires_on))
            return usable
        finally:
            session.close()

    def _lookup(self, session: Session, code: str) -> PromoCode:
        promo = session.query(PromoCode).filter(PromoCode.code == _normalize(code)).first()
        if promo is None:
            raise PromoCodeInvalidError(f"Promo code {code!r} does not exist")
        if not 0 < promo.value <= 100:
            raise PromoCodeInvalidError(f"Promo code {promo.code} has an invalid value")
        return promo
