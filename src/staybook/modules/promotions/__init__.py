from staybook.modules.promotions.codes import PromoCodeProvider, PromoValidation, promo_expiry

__all__ = ["PromoCodeProvider", "PromoValidation", "promo_expiry"]
