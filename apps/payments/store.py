from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from typing import Optional

from django.utils import timezone

from .models import PaymentLog, PaymentRecord

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    APPLIED = "applied"
    # Another writer resolved the record first. Expected under races, not an error.
    ALREADY_RESOLVED = "already_resolved"
    NOT_FOUND = "not_found"


class PaymentRecordStore:
    """
    Access layer for ``PaymentRecord``, the single source of truth that order
    fulfilment reads.

    ``write_if_pending`` is the only way a record reaches a terminal status. It
    is a single ``UPDATE ... WHERE status = 'pending'`` so that concurrent
    writers (webhook, polling fallback, redirect callback, sweeper) cannot
    overwrite each other: the first terminal write wins.
    """

    def read(self, reference: str) -> Optional[PaymentRecord]:
        return PaymentRecord.objects.filter(reference=reference).first()

    def create(self, reference: str, order, amount: Decimal) -> PaymentRecord:
        record = PaymentRecord.objects.create(
            reference=reference,
            order=order,
            amount=amount,
            status=PaymentRecord.STATUS_PENDING,
        )
        logger.info("Payment record %s created for order %s (amount %s)", reference, record.order_id, amount)
        return record

    def write_if_pending(
        self,
        reference: str,
        new_status: str,
        transaction_id: Optional[str],
        raw_payload: Optional[dict],
        source: str,
    ) -> WriteOutcome:
        if new_status not in PaymentRecord.TERMINAL_STATUSES:
            raise ValueError(f"write_if_pending needs a terminal status, got {new_status!r}")

        now = timezone.now()
        updated = PaymentRecord.objects.filter(
            reference=reference,
            status=PaymentRecord.STATUS_PENDING,
        ).update(
            status=new_status,
            gateway_transaction_id=transaction_id,
            raw_payload=raw_payload,
            resolved_by=source,
            resolved_at=now,
            updated_at=now,
        )

        if updated:
            outcome = WriteOutcome.APPLIED
        elif PaymentRecord.objects.filter(reference=reference).exists():
            outcome = WriteOutcome.ALREADY_RESOLVED
        else:
            outcome = WriteOutcome.NOT_FOUND

        self.log_payload(reference, source, f"write:{new_status}:{outcome.value}", raw_payload)
        logger.info(
            "Terminal write %s for %s from %s: %s (transaction %s) payload=%s",
            new_status,
            reference,
            source,
            outcome.value,
            transaction_id,
            raw_payload,
        )
        return outcome

    def log_payload(self, reference: str, source: str, event: str, raw_payload: Optional[dict]) -> PaymentLog:
        return PaymentLog.objects.create(
            provider="paystack",
            reference=reference or "",
            source=source,
            event=event[:50],
            raw_payload=raw_payload,
        )

    def stale_pending(self, older_than, newer_than=None, limit: Optional[int] = None) -> list[PaymentRecord]:
        """Pending records created before ``older_than``, least recently checked first."""
        queryset = PaymentRecord.objects.filter(
            status=PaymentRecord.STATUS_PENDING,
            created_at__lte=older_than,
        )
        if newer_than is not None:
            queryset = queryset.filter(created_at__gte=newer_than)
        queryset = queryset.order_by("updated_at", "created_at")
        if limit is not None:
            queryset = queryset[:limit]
        return list(queryset)

    def mark_checked(self, reference: str) -> None:
        PaymentRecord.objects.filter(
            reference=reference,
            status=PaymentRecord.STATUS_PENDING,
        ).update(updated_at=timezone.now())

    def unfinalized_successes(self, limit: Optional[int] = None) -> list[PaymentRecord]:
        """Successful records whose order was never marked paid."""
        queryset = PaymentRecord.objects.filter(
            status=PaymentRecord.STATUS_SUCCESS,
            order__payment_status="pending",
        ).order_by("resolved_at")
        if limit is not None:
            queryset = queryset[:limit]
        return list(queryset)
