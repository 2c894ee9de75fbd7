"""Card payment gateway client (PayTabs hosted payment pages)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from staybook.config import get_env, get_section
from staybook.errors import MalformedRecordError, PaymentGatewayError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    DECLINED = "declined"


# payment_result.response_status codes
_RESPONSE_STATUS = {
    "A": PaymentStatus.APPROVED,
    "H": PaymentStatus.PENDING,  # On hold
    "P": PaymentStatus.PENDING,
}


def status_from_code(code: str | None) -> PaymentStatus:
    """Anything other than approved or pending counts as declined."""
    return _RESPONSE_STATUS.get((code or "").strip().upper(), PaymentStatus.DECLINED)


def parse_payment_result(data: dict[str, Any]) -> "PaymentResult":
    """Read a query response or callback body into a ``PaymentResult``."""
    transaction_ref = data.get("tran_ref")
    if not transaction_ref:
        raise MalformedRecordError("Payment result is missing tran_ref")
    result = data.get("payment_result") or {}
    return PaymentResult(
        transaction_ref=transaction_ref,
        status=status_from_code(result.get("response_status")),
        cart_id=data.get("cart_id"),
        message=result.get("response_message"),
    )


@dataclass(frozen=True)
class PaymentInitiation:
    redirect_url: str
    transaction_ref: str


@dataclass(frozen=True)
class PaymentResult:
    transaction_ref: str
    status: PaymentStatus
    cart_id: str | None = None
    message: str | None = None


class PaymentGateway(Protocol):
    def initiate(self, amount: float, currency: str, booking_metadata: dict[str, Any]) -> PaymentInitiation:
        ...

    def query(self, transaction_ref: str) -> PaymentResult:
        ...


class PayTabsGateway:
    """Creates hosted payment pages and reads back transaction results."""

    def __init__(
        self,
        profile_id: str | None = None,
        server_key: str | None = None,
        base_url: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        config = get_section("payments")
        self.profile_id = profile_id or get_env("PAYTABS_PROFILE_ID")
        self.server_key = server_key or get_env("PAYTABS_SERVER_KEY")
        self.base_url = (base_url or config["base_url"]).rstrip("/")
        self.return_url = config.get("return_url")
        self.callback_url = config.get("callback_url")
        self._client = client or httpx.Client(timeout=config["timeout_seconds"])

    @property
    def is_configured(self) -> bool:
        return bool(self.profile_id and self.server_key)

    def initiate(self, amount: float, currency: str, booking_metadata: dict[str, Any]) -> PaymentInitiation:
        """Open a payment page for a booking and return where to send the guest."""
        if not self.is_configured:
            raise PaymentGatewayError("Payment gateway credentials are not configured")

        payload = {
            "profile_id": self.profile_id,
            "tran_type": "sale",
            "tran_class": "ecom",
            "cart_id": str(booking_metadata["reference"]),
            "cart_description": booking_metadata.get("description") or f"Booking {booking_metadata['reference']}",
            "cart_currency": currency,
            "cart_amount": amount,
            "return": self.return_url,
            "callback": self.callback_url,
        }
        data = self._post("/payment/request", payload)

        redirect_url = data.get("redirect_url")
        transaction_ref = data.get("tran_ref")
        if not redirect_url or not transaction_ref:
            logger.error("Payment request for %s returned no redirect: %s", payload["cart_id"], data)
            raise PaymentGatewayError(data.get("message") or "Payment gateway did not return a payment page")

        logger.info("Payment page opened for %s (tran_ref=%s)", payload["cart_id"], transaction_ref)
        return PaymentInitiation(redirect_url=redirect_url, transaction_ref=transaction_ref)

    def query(self, transaction_ref: str) -> PaymentResult:
        """Ask the gateway for the current result of a transaction."""
        data = self._post("/payment/query", {"profile_id": self.profile_id, "tran_ref": transaction_ref})
        return parse_payment_result(data)

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self._client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"authorization": self.server_key or ""},
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            logger.exception("Payment gateway request to %s failed", path)
            raise PaymentGatewayError("Payment gateway is unavailable") from exc
        except ValueError as exc:
            logger.exception("Payment gateway returned a non-JSON response for %s", path)
            raise PaymentGatewayError("Payment gateway returned an unreadable response") from exc
