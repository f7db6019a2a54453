from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import requests
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_email

from .exceptions import GatewayNotConfigured, InitializationFailed, NetworkFailure

logger = logging.getLogger(__name__)

# Paystack transaction statuses collapsed onto our three record statuses.
# Anything not listed ("ongoing", "abandoned", "queued", ...) is still pending.
GATEWAY_STATUS_MAP = {
    "success": "success",
    "failed": "failed",
    "reversed": "failed",
}


@dataclass(frozen=True)
class InitializedPayment:
    authorization_url: str
    reference: str
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResult:
    status: str
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "failed")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Any) -> Optional[Decimal]:
    if amount is None:
        return None
    try:
        return Decimal(int(amount)) / Decimal("100")
    except (TypeError, ValueError):
        return None


class PaystackClient:
    """
    Thin wrapper around Paystack's initialize and verify endpoints.

    Stateless; ``verify`` may be called any number of times for a reference.
    """

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co", timeout: float = 10.0) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "PaystackClient":
        return cls(
            secret_key=getattr(settings, "PAYSTACK_SECRET_KEY", "") or "",
            base_url=getattr(settings, "PAYSTACK_BASE_URL", "https://api.paystack.co"),
            timeout=getattr(settings, "PAYSTACK_TIMEOUT_SECONDS", 10.0),
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def initialize(
        self,
        amount: Decimal,
        payer_email: str,
        reference: str,
        order_metadata: Optional[dict] = None,
        callback_url: Optional[str] = None,
    ) -> InitializedPayment:
        if amount is None or Decimal(str(amount)) <= 0:
            raise ValueError("amount must be greater than zero")
        try:
            validate_email(payer_email)
        except ValidationError as exc:
            raise ValueError(f"invalid payer email: {payer_email!r}") from exc

        if not self.secret_key:
            raise GatewayNotConfigured("Paystack secret key is not configured")

        payload = {
            "email": payer_email,
            "amount": to_minor_units(amount),
            "reference": reference,
        }
        if order_metadata:
            payload["metadata"] = order_metadata
        if callback_url:
            payload["callback_url"] = callback_url

        try:
            resp = requests.post(
                f"{self.base_url}/transaction/initialize",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json() or {}
        except requests.RequestException as exc:
            logger.warning("Paystack initialize failed for %s: %s", reference, exc)
            raise InitializationFailed(f"Failed to contact payment provider: {exc}") from exc
        except ValueError as exc:
            raise InitializationFailed("Payment provider returned an unreadable response") from exc

        data = body.get("data") or {}
        auth_url = data.get("authorization_url")
        if not body.get("status") or not auth_url:
            logger.warning("Paystack refused initialize for %s: %s", reference, body)
            raise InitializationFailed(body.get("message") or "Payment initialization failed")

        return InitializedPayment(
            authorization_url=auth_url,
            reference=data.get("reference") or reference,
            raw=body,
        )

    def verify(self, reference: str) -> VerificationResult:
        if not self.secret_key:
            raise NetworkFailure("Paystack secret key is not configured")

        try:
            resp = requests.get(
                f"{self.base_url}/transaction/verify/{reference}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkFailure(f"Failed to verify payment with Paystack: {exc}") from exc

        try:
            body = resp.json() or {}
        except ValueError:
            body = {}

        if resp.status_code in (400, 404) and not body.get("status"):
            # Paystack has not seen the reference yet, e.g. the customer never
            # reached the payment page. Inconclusive rather than failed.
            return VerificationResult(status="pending", raw=body)

        if resp.status_code >= 400 or not body:
            raise NetworkFailure(f"Paystack verify returned HTTP {resp.status_code}")

        data = body.get("data") or {}
        transaction_id = data.get("id")
        return VerificationResult(
            status=GATEWAY_STATUS_MAP.get(data.get("status"), "pending"),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount=from_minor_units(data.get("amount")),
            raw=body,
        )


def get_gateway_client() -> PaystackClient:
    return PaystackClient.from_settings()
