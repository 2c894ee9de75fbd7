"""Tests for promo code grants and validation."""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy.orm import Session

from staybook.errors import PromoCodeExpiredError, PromoCodeInUseError, PromoCodeInvalidError
from staybook.models.booking import Booking
from staybook.models.promo import PromoCode
from staybook.models.property import Property
from staybook.modules.promotions.codes import PromoCodeProvider, promo_expiry

from conftest import NOW, TODAY


def _booking(prop: Property, promo: PromoCode, guest_id: int, check_in: date, check_out: date, status="confirmed"):
    return Booking(
        reference=f"BK-{guest_id}{check_in:%m%d}",
        property_id=prop.id,
        guest_id=guest_id,
        host_id=prop.host_id,
        check_in=check_in,
        check_out=check_out,
        rental_type="daily",
        guests=1,
        status=status,
        total_price=1000.0,
        promo_code_id=promo.id,
    )


def test_grant_then_validate(promo_code: PromoCode):
    provider = PromoCodeProvider()
    provider.grant("welcome10", guest_id=5, now=NOW)

    result = provider.validate("WELCOME10", guest_id=5, today=TODAY)
    assert result.value == 10.0
    assert result.expires_on == date(2030, 12, 31)
    assert result.applied().code == "WELCOME10"


def test_validate_requires_grant(promo_code: PromoCode):
    with pytest.raises(PromoCodeInvalidError):
        PromoCodeProvider().validate("WELCOME10", guest_id=5, today=TODAY)


def test_unknown_code(session_factory):
    with pytest.raises(PromoCodeInvalidError):
        PromoCodeProvider().validate("NOPE", guest_id=5, today=TODAY)


def test_expired_code_cannot_be_granted(db_session: Session):
    db_session.add(PromoCode(code="OLD", value=20.0, expiry_date=date(2030, 2, 1)))
    db_session.commit()
    with pytest.raises(PromoCodeExpiredError) as exc_info:
        PromoCodeProvider().grant("OLD", guest_id=5, now=NOW)
    assert exc_info.value.code == "code_expired"


def test_relative_expiry_counts_from_grant(db_session: Session):
    db_session.add(PromoCode(code="MONTHONE", value=5.0, relative_expiry_months=1, allow_multi_account=True))
    db_session.commit()
    provider = PromoCodeProvider()
    provider.grant("MONTHONE", guest_id=5, now=datetime(2030, 1, 15, 12, 0, tzinfo=timezone.utc))

    assert provider.validate("MONTHONE", guest_id=5, today=date(2030, 2, 10)).expires_on == date(2030, 2, 15)
    with pytest.raises(PromoCodeExpiredError):
        provider.validate("MONTHONE", guest_id=5, today=date(2030, 2, 20))


def test_single_account_code(db_session: Session):
    db_session.add(PromoCode(code="ONLYONE", value=50.0, allow_multi_account=False))
    db_session.commit()
    provider = PromoCodeProvider()

    first = provider.grant("ONLYONE", guest_id=5, now=NOW)
    again = provider.grant("ONLYONE", guest_id=5, now=NOW)
    assert again.id == first.id

    with pytest.raises(PromoCodeInvalidError):
        provider.grant("ONLYONE", guest_id=6, now=NOW)


def test_code_bound_to_overlapping_booking(db_session: Session, sample_property: Property, promo_code: PromoCode):
    provider = PromoCodeProvider()
    provider.grant("WELCOME10", guest_id=5, now=NOW)
    db_session.add(_booking(sample_property, promo_code, 5, date(2030, 4, 1), date(2030, 4, 5)))
    db_session.commit()

    with pytest.raises(PromoCodeInUseError):
        provider.validate_for_stay("WELCOME10", 5, date(2030, 4, 4), date(2030, 4, 8), today=TODAY)

    # Back-to-back stays do not overlap
    applied = provider.validate_for_stay("WELCOME10", 5, date(2030, 4, 5), date(2030, 4, 8), today=TODAY)
    assert applied.value == 10.0


def test_cancelled_booking_releases_code(db_session: Session, sample_property: Property, promo_code: PromoCode):
    provider = PromoCodeProvider()
    provider.grant("WELCOME10", guest_id=5, now=NOW)
    db_session.add(_booking(sample_property, promo_code, 5, date(2030, 4, 1), date(2030, 4, 5), status="cancelled"))
    db_session.commit()

    provider.validate_for_stay("WELCOME10", 5, date(2030, 4, 2), date(2030, 4, 4), today=TODAY)


def test_available_for_skips_expired_and_in_use(db_session: Session, sample_property: Property, promo_code: PromoCode):
    db_session.add(PromoCode(code="SHORT", value=5.0, expiry_date=date(2030, 3, 10), allow_multi_account=True))
    db_session.commit()
    provider = PromoCodeProvider()
    provider.grant("WELCOME10", guest_id=5, now=NOW)
    provider.grant("SHORT", guest_id=5, now=NOW)

    codes = [p.code for p in provider.available_for(5, today=TODAY)]
    assert codes == ["SHORT", "WELCOME10"]

    codes = [p.code for p in provider.available_for(5, today=date(2030, 3, 11))]
    assert codes == ["WELCOME10"]

    db_session.add(_booking(sample_property, promo_code, 5, date(2030, 4, 1), date(2030, 4, 5)))
    db_session.commit()
    codes = [p.code for p in provider.available_for(5, date(2030, 4, 2), date(2030, 4, 3), today=TODAY)]
    assert codes == ["SHORT"]


def test_promo_expiry_prefers_absolute_date():
    promo = PromoCode(code="X", value=5.0, expiry_date=date(2030, 6, 1), relative_expiry_months=1)
    assert promo_expiry(promo, datetime(2030, 1, 1)) == date(2030, 6, 1)
