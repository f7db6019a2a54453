from unittest import mock

import pytest
from django.db import DatabaseError

from apps.orders.signals import order_paid
from apps.payments.services import ingest_webhook, verify_from_callback
from apps.payments.store import WriteOutcome

REFERENCE = "ORD-100-171234"

SUCCESS_EVENT = {
    "event": "charge.success",
    "data": {"id": 4099260516, "reference": REFERENCE, "status": "success", "amount": 50000},
}


def test_redelivered_webhook_finalizes_order_after_earlier_failure(pending_record, store):
    with mock.patch("apps.payments.services.finalize_order", side_effect=DatabaseError("connection lost")):
        with pytest.raises(DatabaseError):
            ingest_webhook(SUCCESS_EVENT, store=store)

    assert store.read(REFERENCE).status == "success"
    pending_record.order.refresh_from_db()
    assert not pending_record.order.is_paid

    outcome = ingest_webhook(SUCCESS_EVENT, store=store)

    assert outcome is WriteOutcome.ALREADY_RESOLVED
    pending_record.order.refresh_from_db()
    assert pending_record.order.is_paid
    assert pending_record.order.paystack_transaction_id == "4099260516"


def test_redelivered_webhook_does_not_finalize_twice(pending_record, store):
    receiver = mock.Mock()
    order_paid.connect(receiver, weak=False)
    try:
        ingest_webhook(SUCCESS_EVENT, store=store)
        ingest_webhook(SUCCESS_EVENT, store=store)
    finally:
        order_paid.disconnect(receiver)

    receiver.assert_called_once()
    pending_record.order.refresh_from_db()
    assert pending_record.order.payment_reference == REFERENCE


def test_callback_on_resolved_record_repairs_unpaid_order(pending_record, store, gateway):
    store.write_if_pending(REFERENCE, "success", "TXN-9", {}, source="webhook")

    status = verify_from_callback(REFERENCE, gateway=gateway, store=store)

    assert status == "success"
    gateway.verify.assert_not_called()
    pending_record.order.refresh_from_db()
    assert pending_record.order.is_paid


def test_failed_record_never_finalizes(pending_record, store):
    event = {"event": "charge.failed", "data": {"id": 1, "reference": REFERENCE, "status": "failed"}}

    ingest_webhook(event, store=store)
    ingest_webhook(event, store=store)

    pending_record.order.refresh_from_db()
    assert not pending_record.order.is_paid


@pytest.mark.parametrize("data", [["not", "a", "dict"], "charge", None, 42])
def test_webhook_with_malformed_data_is_ignored(pending_record, store, data):
    assert ingest_webhook({"event": "charge.success", "data": data}, store=store) is None
    assert store.read(REFERENCE).status == "pending"
