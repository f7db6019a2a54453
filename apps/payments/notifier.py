from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)

MESSAGE_TYPE = "payment_status"
MESSAGE_STATUSES = ("success", "failed")


@dataclass(frozen=True)
class PaymentStatusMessage:
    reference: str
    status: str

    def to_dict(self) -> dict:
        return {"type": MESSAGE_TYPE, "reference": self.reference, "status": self.status}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PaymentStatusMessage"]:
        """Parse a wire message, returning None for anything that is not a terminal payment status."""
        if not isinstance(data, dict) or data.get("type") != MESSAGE_TYPE:
            return None
        reference = data.get("reference")
        status = data.get("status")
        if not reference or status not in MESSAGE_STATUSES:
            return None
        return cls(reference=str(reference), status=status)


class CrossContextNotifier:
    """
    Hands a terminal result observed by the redirect callback (the popup) to
    the reconciliation loop started by the checkout (the parent).

    Messages go through a cache mailbox keyed by reference. ``publish`` uses
    ``cache.add`` so a reference gets at most one message; it never raises,
    because nobody may be listening any more.
    """

    key_prefix = "payment_status"

    def __init__(self, backend=None, ttl: Optional[int] = None) -> None:
        self.backend = backend or cache
        self.ttl = ttl if ttl is not None else getattr(settings, "PAYMENT_STATUS_MESSAGE_TTL_SECONDS", 600)

    def _key(self, reference: str) -> str:
        return f"{self.key_prefix}:{reference}"

    def publish(self, reference: str, status: str) -> bool:
        if status not in MESSAGE_STATUSES:
            raise ValueError(f"only terminal statuses are published, got {status!r}")
        message = PaymentStatusMessage(reference=reference, status=status)
        try:
            added = self.backend.add(self._key(reference), message.to_dict(), self.ttl)
        except Exception:
            logger.warning("Could not deliver payment status for %s", reference, exc_info=True)
            return False
        if not added:
            logger.info("Payment status for %s was already published; dropping %s", reference, status)
            return False
        logger.info("Published payment status %s for %s", status, reference)
        return True

    def receive(self, reference: str) -> Optional[PaymentStatusMessage]:
        """Take the waiting message for ``reference`` out of the mailbox, if any."""
        key = self._key(reference)
        try:
            data = self.backend.get(key)
            if data is not None:
                self.backend.delete(key)
        except Exception:
            logger.warning("Could not read payment status mailbox for %s", reference, exc_info=True)
            return None
        return PaymentStatusMessage.from_dict(data)
