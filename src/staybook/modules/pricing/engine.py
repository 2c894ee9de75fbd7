"""Deterministic price breakdowns for candidate bookings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from staybook.config import get_section
from staybook.errors import PricingError, RateNotSetError
from staybook.terms import PropertyProfile, RentalType

logger = logging.getLogger(__name__)


def round_half_up(value: Decimal | float | int) -> int:
    """Round to whole currency units, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class AppliedPromo:
    """A promo code that has already passed validation for this guest and stay."""

    promo_code_id: int
    code: str
    value: float  # Percent off


@dataclass(frozen=True)
class PriceBreakdown:
    rental_type: RentalType
    units: int  # Nights for daily stays, months for monthly
    unit_rate: float
    base: int
    service_fee: int
    tax: int
    subtotal: int
    discount: int
    final_total: int
    currency: str
    promo: AppliedPromo | None = None
    # Monthly disclosure: what the whole contract costs, collected one installment at a time
    installments: int = 1
    contract_base: int | None = None
    contract_total: int | None = None
    adjustments: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rental_type": self.rental_type.value,
            "units": self.units,
            "unit_rate": self.unit_rate,
            "base": self.base,
            "service_fee": self.service_fee,
            "tax": self.tax,
            "subtotal": self.subtotal,
            "discount": self.discount,
            "final_total": self.final_total,
            "currency": self.currency,
            "promo_code": self.promo.code if self.promo else None,
            "installments": self.installments,
            "contract_base": self.contract_base,
            "contract_total": self.contract_total,
            "adjustments": list(self.adjustments),
        }


class PricingCalculator:
    """Computes base, service fee, tax, promotional discount and total."""

    def __init__(
        self,
        service_fee_rate: float | None = None,
        tax_rate: float | None = None,
        currency: str | None = None,
    ) -> None:
        config = get_section("pricing")
        self._fee_rate = Decimal(str(service_fee_rate if service_fee_rate is not None else config["service_fee_rate"]))
        self._tax_rate = Decimal(str(tax_rate if tax_rate is not None else config["tax_rate"]))
        self.currency = currency or config["currency"]

    def fees_for(self, base: int) -> tuple[int, int]:
        """Service fee and tax for a base amount."""
        return round_half_up(base * self._fee_rate), round_half_up(base * self._tax_rate)

    def discount_for(self, subtotal: int, percent: float) -> int:
        """Promotional discount on a subtotal, never more than the subtotal."""
        discount = round_half_up(Decimal(subtotal) * Decimal(str(percent)) / Decimal(100))
        return max(0, min(discount, subtotal))

    def quote(
        self,
        profile: PropertyProfile,
        rental_type: RentalType,
        check_in: date,
        check_out: date,
        duration_months: int | None = None,
        promo: AppliedPromo | None = None,
    ) -> PriceBreakdown:
        """Price a stay that has already passed request validation."""
        adjustments: list[str] = []
        contract_base = None
        contract_total = None
        installments = 1

        if rental_type is RentalType.DAILY:
            rate = profile.daily_terms().nightly_rate
            if rate is None:
                raise RateNotSetError(f"Property {profile.property_id} has no nightly rate")
            units = (check_out - check_in).days
            if units < 1:
                raise PricingError("A nightly stay must cover at least one night")
            base = round_half_up(Decimal(units) * Decimal(str(rate)))
            adjustments.append(f"{units} nights x {rate:g}")
        else:
            rate = profile.monthly_terms().monthly_rate
            if rate is None:
                raise RateNotSetError(f"Property {profile.property_id} has no monthly rate")
            if not duration_months or duration_months < 1:
                raise PricingError("A monthly stay must cover at least one month")
            units = duration_months
            installments = duration_months
            # Only the first installment is charged now
            base = round_half_up(rate)
            contract_base = round_half_up(Decimal(str(rate)) * duration_months)
            contract_fee, contract_tax = self.fees_for(contract_base)
            contract_total = contract_base + contract_fee + contract_tax
            adjustments.append(f"Installment 1 of {duration_months} at {rate:g}/month")

        service_fee, tax = self.fees_for(base)
        subtotal = base + service_fee + tax

        discount = 0
        if promo is not None:
            discount = self.discount_for(subtotal, promo.value)
            adjustments.append(f"Promo {promo.code}: -{promo.value:g}%")

        final_total = subtotal - discount
        breakdown = PriceBreakdown(
            rental_type=rental_type,
            units=units,
            unit_rate=float(rate),
            base=base,
            service_fee=service_fee,
            tax=tax,
            subtotal=subtotal,
            discount=discount,
            final_total=final_total,
            currency=self.currency,
            promo=promo,
            installments=installments,
            contract_base=contract_base,
            contract_total=contract_total,
            adjustments=adjustments,
        )
        logger.debug("Quoted property %s: %s", profile.property_id, breakdown)
        return breakdown
