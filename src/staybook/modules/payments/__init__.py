from staybook.modules.payments.gateway import (
    PaymentGateway,
    PaymentInitiation,
    PaymentResult,
    PaymentStatus,
    PayTabsGateway,
    parse_payment_result,
    status_from_code,
)

__all__ = [
    "PaymentGateway",
    "PaymentInitiation",
    "PaymentResult",
    "PaymentStatus",
    "PayTabsGateway",
    "parse_payment_result",
    "status_from_code",
]
