from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from apps.orders.models import CustomerOrder
from apps.orders.services import finalize_order

from .exceptions import NetworkFailure, OrderAlreadyPaid
from .gateway import get_gateway_client
from .models import PaymentRecord
from .notifier import CrossContextNotifier
from .reconciliation import ReconciliationAttempt, ReconciliationLoop, ReconciliationPolicy
from .references import generate_reference
from .store import PaymentRecordStore, WriteOutcome

logger = logging.getLogger(__name__)

HANDLED_WEBHOOK_EVENTS = ("charge.success", "charge.failed")

LOOP_STATE_KEY = "reconcile:state:{reference}"
RUN_KEY = "reconcile:run:{reference}"
# Long enough for a customer to come back to the order page.
LOOP_STATE_TTL = 60 * 60 * 24


@dataclass(frozen=True)
class CheckoutSession:
    authorization_url: str
    reference: str
    poll_interval: float


def build_callback_url(reference: str) -> Optional[str]:
    frontend_base = getattr(settings, "FRONTEND_BASE_URL", "")
    if not frontend_base:
        return None
    return f"{frontend_base.rstrip('/')}/payment-success?reference={reference}"


def start_checkout(order: CustomerOrder, payer_email: str, gateway=None, store=None) -> CheckoutSession:
    """
    Initialize a gateway payment for ``order`` under a brand-new reference.

    The pending record is only created once the gateway has accepted the
    payment; ``InitializationFailed`` leaves nothing behind and the customer
    simply retries, which issues another reference.
    """
    if order.is_paid:
        raise OrderAlreadyPaid(f"Order {order.order_number} is already paid")

    gateway = gateway or get_gateway_client()
    store = store or PaymentRecordStore()
    reference = generate_reference(order.order_number)

    initialized = gateway.initialize(
        amount=order.total_amount,
        payer_email=payer_email,
        reference=reference,
        order_metadata={"order_id": str(order.id), "order_number": order.order_number},
        callback_url=build_callback_url(reference),
    )
    store.create(reference, order, order.total_amount)
    store.log_payload(reference, "checkout", "initialize", initialized.raw)

    return CheckoutSession(
        authorization_url=initialized.authorization_url,
        reference=reference,
        poll_interval=ReconciliationPolicy.from_settings().poll_interval,
    )


def build_loop(reference: str, attempt: Optional[ReconciliationAttempt] = None, gateway=None) -> ReconciliationLoop:
    return ReconciliationLoop(
        reference=reference,
        store=PaymentRecordStore(),
        gateway=gateway or get_gateway_client(),
        policy=ReconciliationPolicy.from_settings(),
        on_success=finalize_order,
        attempt=attempt,
    )


def _finalize_if_paid(store: PaymentRecordStore, reference: str) -> None:
    """
    Finalize the order whenever the stored record says ``success``, whoever
    wrote it. ``finalize_order`` is a no-op for an order that is already paid,
    so a retried webhook repairs an order whose first finalization failed.
    """
    record = store.read(reference)
    if record is None or record.status != PaymentRecord.STATUS_SUCCESS:
        return
    finalize_order(record.order_id, reference, record.gateway_transaction_id)


def ingest_webhook(event: dict, store: Optional[PaymentRecordStore] = None) -> Optional[WriteOutcome]:
    """
    Apply a (signature-checked) Paystack event to the payment record.

    Finalizes the order itself whenever the record ends up ``success``, so
    late webhooks still complete orders after every loop has stopped, and a
    redelivered event repairs an order whose finalization failed the first
    time.
    """
    store = store or PaymentRecordStore()
    event_name = event.get("event") or ""
    data = event.get("data")
    if not isinstance(data, dict):
        data = {}
    reference = data.get("reference") or ""

    store.log_payload(reference, "webhook", event_name, event)

    if event_name not in HANDLED_WEBHOOK_EVENTS or not reference:
        logger.info("Ignoring Paystack event %s for %r", event_name, reference)
        return None

    status = PaymentRecord.STATUS_SUCCESS if data.get("status") == "success" else PaymentRecord.STATUS_FAILED
    transaction_id = str(data["id"]) if data.get("id") is not None else None

    outcome = store.write_if_pending(reference, status, transaction_id, event, source="webhook")
    if outcome is WriteOutcome.NOT_FOUND:
        logger.warning("Paystack webhook for unknown reference %s", reference)
        return outcome

    _finalize_if_paid(store, reference)
    return outcome


def verify_from_callback(
    reference: str,
    gateway=None,
    store: Optional[PaymentRecordStore] = None,
    notifier: Optional[CrossContextNotifier] = None,
) -> str:
    """
    Resolve a reference after the gateway redirected the customer back.

    Returns the record status. A terminal status is forwarded to the loop
    polling on behalf of the checkout page. Raises ``PaymentRecord.DoesNotExist``
    for unknown references.
    """
    store = store or PaymentRecordStore()
    record = store.read(reference)
    if record is None:
        raise PaymentRecord.DoesNotExist(reference)

    if not record.is_terminal:
        gateway = gateway or get_gateway_client()
        try:
            result = gateway.verify(reference)
        except NetworkFailure as exc:
            logger.warning("Callback verification for %s inconclusive: %s", reference, exc)
            return PaymentRecord.STATUS_PENDING

        logger.info("Callback verification for %s: %s payload=%s", reference, result.status, result.raw)
        if result.is_terminal:
            store.write_if_pending(reference, result.status, result.transaction_id, result.raw, source="callback")
        record = store.read(reference)

    _finalize_if_paid(store, reference)

    if record.is_terminal:
        (notifier or CrossContextNotifier()).publish(reference, record.status)
    return record.status


def sweep_stale_payments(gateway=None, store: Optional[PaymentRecordStore] = None, now=None) -> int:
    """
    Periodic repair pass, run by Celery beat.

    Finalizes orders whose payment record already says ``success`` but whose
    finalization never went through, then verifies one batch of records still
    ``pending`` past the stale threshold. Records older than the sweep horizon
    are abandoned checkouts and are left alone, so the gateway's verify
    endpoint sees at most one batch per run. Records that stay inconclusive
    go to the back of the queue. Returns how many pending records were
    resolved here.
    """
    store = store or PaymentRecordStore()
    gateway = gateway or get_gateway_client()
    now = now or timezone.now()
    stale_cutoff = now - timedelta(minutes=getattr(settings, "PAYMENT_STALE_AFTER_MINUTES", 15))
    horizon = now - timedelta(hours=getattr(settings, "PAYMENT_SWEEP_MAX_AGE_HOURS", 48))
    batch_size = getattr(settings, "PAYMENT_SWEEP_BATCH_SIZE", 50)

    for record in store.unfinalized_successes(limit=batch_size):
        logger.warning("Payment %s succeeded but order %s is unpaid; finalizing", record.reference, record.order_id)
        finalize_order(record.order_id, record.reference, record.gateway_transaction_id)

    healed = 0
    for record in store.stale_pending(stale_cutoff, newer_than=horizon, limit=batch_size):
        try:
            result = gateway.verify(record.reference)
        except NetworkFailure as exc:
            logger.warning("Sweeper could not verify %s: %s", record.reference, exc)
            store.mark_checked(record.reference)
            continue
        if not result.is_terminal:
            store.mark_checked(record.reference)
            continue
        outcome = store.write_if_pending(record.reference, result.status, result.transaction_id, result.raw, source="sweeper")
        if outcome is WriteOutcome.APPLIED:
            healed += 1
        _finalize_if_paid(store, record.reference)
    return healed


def remember_loop_state(loop: ReconciliationLoop) -> None:
    cache.set(LOOP_STATE_KEY.format(reference=loop.reference), loop.describe(), LOOP_STATE_TTL)


def last_loop_state(reference: str) -> Optional[dict]:
    return cache.get(LOOP_STATE_KEY.format(reference=reference))


def claim_run(reference: str) -> str:
    """Make a new loop run the only live one for ``reference``; older runs stop at their next tick."""
    run_id = uuid.uuid4().hex
    cache.set(RUN_KEY.format(reference=reference), run_id, LOOP_STATE_TTL)
    return run_id


def is_current_run(reference: str, run_id: str) -> bool:
    return cache.get(RUN_KEY.format(reference=reference)) == run_id


def release_run(reference: str) -> None:
    cache.delete(RUN_KEY.format(reference=reference))
