from staybook.modules.pricing.engine import AppliedPromo, PriceBreakdown, PricingCalculator, round_half_up

__all__ = ["AppliedPromo", "PriceBreakdown", "PricingCalculator", "round_half_up"]
