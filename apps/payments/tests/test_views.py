import hashlib
import hmac
import json
from unittest import mock

import pytest
from django.urls import reverse
from rest_framework.test import APIClient

from apps.orders.signals import order_paid
from apps.payments.exceptions import GatewayNotConfigured, InitializationFailed, NetworkFailure
from apps.payments.gateway import InitializedPayment
from apps.payments.models import PaymentLog, PaymentRecord
from apps.payments.notifier import CrossContextNotifier
from apps.payments.services import is_current_run, last_loop_state

REFERENCE = "ORD-100-171234"
SECRET = "sk_test_reconciliation"


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def gateway_client(gateway):
    with mock.patch("apps.payments.services.get_gateway_client", return_value=gateway):
        yield gateway


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def _post_webhook(api_client, event, signature=None):
    body = json.dumps(event).encode()
    return api_client.post(
        reverse("paystack-webhook"),
        data=body,
        content_type="application/json",
        HTTP_X_PAYSTACK_SIGNATURE=signature if signature is not None else _sign(body),
    )


class TestCheckout:
    def test_creates_pending_record_and_starts_reconciliation(self, api_client, order, gateway_client, scheduled):
        gateway_client.initialize.side_effect = lambda **kwargs: InitializedPayment(
            authorization_url="https://checkout.paystack.com/abc",
            reference=kwargs["reference"],
            raw={"status": True},
        )

        response = api_client.post(
            reverse("payment-checkout"), {"order_number": "ORD-100", "email": "buyer@example.com"}, format="json"
        )

        assert response.status_code == 201
        reference = response.data["reference"]
        assert reference.startswith("ORD-100-")
        assert response.data["authorization_url"] == "https://checkout.paystack.com/abc"
        assert response.data["customer_order_id"] == str(order.id)

        record = PaymentRecord.objects.get(reference=reference)
        assert record.status == "pending"
        assert record.amount == order.total_amount

        kwargs = gateway_client.initialize.call_args.kwargs
        assert kwargs["payer_email"] == "buyer@example.com"
        assert kwargs["callback_url"] == f"http://shop.test/payment-success?reference={reference}"
        scheduled.assert_called_once()
        assert scheduled.call_args[0][0] == reference

    def test_each_checkout_gets_a_new_reference(self, api_client, order, gateway_client, scheduled):
        gateway_client.initialize.side_effect = lambda **kwargs: InitializedPayment(
            authorization_url="https://checkout.paystack.com/abc", reference=kwargs["reference"]
        )
        payload = {"order_number": "ORD-100", "email": "buyer@example.com"}

        first = api_client.post(reverse("payment-checkout"), payload, format="json")
        second = api_client.post(reverse("payment-checkout"), payload, format="json")

        assert first.data["reference"] != second.data["reference"]
        assert PaymentRecord.objects.filter(order=order).count() == 2

    def test_initialization_failure_leaves_no_record(self, api_client, order, gateway_client, scheduled):
        gateway_client.initialize.side_effect = InitializationFailed("Duplicate Transaction Reference")

        response = api_client.post(
            reverse("payment-checkout"), {"order_number": "ORD-100", "email": "buyer@example.com"}, format="json"
        )

        assert response.status_code == 502
        assert response.data["detail"] == "We couldn't start your payment. Please try again."
        assert not PaymentRecord.objects.exists()
        scheduled.assert_not_called()

    def test_unconfigured_gateway(self, api_client, order, gateway_client, scheduled):
        gateway_client.initialize.side_effect = GatewayNotConfigured("no key")

        response = api_client.post(
            reverse("payment-checkout"), {"order_number": "ORD-100", "email": "buyer@example.com"}, format="json"
        )

        assert response.status_code == 503

    def test_paid_order_is_rejected(self, api_client, order, gateway_client, scheduled):
        order.payment_status = "paid"
        order.save()

        response = api_client.post(
            reverse("payment-checkout"), {"order_number": "ORD-100", "email": "buyer@example.com"}, format="json"
        )

        assert response.status_code == 409
        gateway_client.initialize.assert_not_called()

    def test_unknown_order(self, api_client, db, scheduled):
        response = api_client.post(
            reverse("payment-checkout"), {"order_number": "ORD-404", "email": "buyer@example.com"}, format="json"
        )

        assert response.status_code == 404

    def test_invalid_email(self, api_client, order, scheduled):
        response = api_client.post(
            reverse("payment-checkout"), {"order_number": "ORD-100", "email": "nope"}, format="json"
        )

        assert response.status_code == 400


class TestWebhook:
    def test_valid_success_event_resolves_and_finalizes(self, api_client, pending_record):
        receiver = mock.Mock()
        order_paid.connect(receiver, weak=False)
        try:
            event = {
                "event": "charge.success",
                "data": {"id": 4099260516, "reference": REFERENCE, "status": "success", "amount": 50000},
            }
            response = _post_webhook(api_client, event)
        finally:
            order_paid.disconnect(receiver)

        assert response.status_code == 200
        assert response.data == {"status": "ok", "outcome": "applied"}
        record = PaymentRecord.objects.get(reference=REFERENCE)
        assert record.status == "success"
        assert record.gateway_transaction_id == "4099260516"
        assert record.resolved_by == "webhook"
        receiver.assert_called_once()
        pending_record.order.refresh_from_db()
        assert pending_record.order.payment_status == "paid"

    def test_repeated_event_is_already_resolved(self, api_client, pending_record):
        event = {"event": "charge.failed", "data": {"id": 1, "reference": REFERENCE, "status": "failed"}}

        _post_webhook(api_client, event)
        response = _post_webhook(api_client, event)

        assert response.data["outcome"] == "already_resolved"
        assert PaymentRecord.objects.get(reference=REFERENCE).status == "failed"

    def test_invalid_signature_is_rejected(self, api_client, pending_record):
        event = {"event": "charge.success", "data": {"id": 1, "reference": REFERENCE, "status": "success"}}

        response = _post_webhook(api_client, event, signature=_sign(b"tampered"))

        assert response.status_code == 401
        assert PaymentRecord.objects.get(reference=REFERENCE).status == "pending"

    def test_missing_signature_is_rejected(self, api_client, pending_record):
        response = api_client.post(reverse("paystack-webhook"), data=b"{}", content_type="application/json")

        assert response.status_code == 401

    def test_unhandled_event_is_logged_and_acknowledged(self, api_client, pending_record):
        event = {"event": "transfer.success", "data": {"reference": REFERENCE}}

        response = _post_webhook(api_client, event)

        assert response.status_code == 200
        assert response.data["outcome"] is None
        assert PaymentLog.objects.filter(reference=REFERENCE, source="webhook", event="transfer.success").exists()

    def test_signed_event_with_malformed_data_is_acknowledged(self, api_client, pending_record):
        response = _post_webhook(api_client, {"event": "charge.success", "data": ["ORD-100-171234"]})

        assert response.status_code == 200
        assert response.data["outcome"] is None

    def test_unknown_reference(self, api_client, db):
        event = {"event": "charge.success", "data": {"id": 1, "reference": "ORD-404-1", "status": "success"}}

        response = _post_webhook(api_client, event)

        assert response.status_code == 200
        assert response.data["outcome"] == "not_found"


class TestCallback:
    def test_verifies_and_hands_result_to_checkout_context(self, api_client, pending_record, gateway_client, verified):
        gateway_client.verify.return_value = verified("success", "TXN-9")

        response = api_client.get(reverse("paystack-callback"), {"reference": REFERENCE})

        assert response.status_code == 200
        assert response.data["status"] == "success"
        assert response.data["post_message"] == {"type": "payment_status", "reference": REFERENCE, "status": "success"}
        record = PaymentRecord.objects.get(reference=REFERENCE)
        assert record.resolved_by == "callback"
        assert CrossContextNotifier().receive(REFERENCE).status == "success"
        pending_record.order.refresh_from_db()
        assert pending_record.order.is_paid

    def test_inconclusive_verification_stays_pending(self, api_client, pending_record, gateway_client):
        gateway_client.verify.side_effect = NetworkFailure("timeout")

        response = api_client.get(reverse("paystack-callback"), {"reference": REFERENCE})

        assert response.status_code == 200
        assert response.data["status"] == "pending"
        assert response.data["post_message"] is None
        assert CrossContextNotifier().receive(REFERENCE) is None

    def test_already_resolved_record_skips_gateway(self, api_client, pending_record, store, gateway_client):
        store.write_if_pending(REFERENCE, "failed", None, {}, source="webhook")

        response = api_client.get(reverse("paystack-callback"), {"reference": REFERENCE})

        assert response.data["status"] == "failed"
        gateway_client.verify.assert_not_called()

    def test_missing_and_unknown_reference(self, api_client, db):
        assert api_client.get(reverse("paystack-callback")).status_code == 400
        assert api_client.get(reverse("paystack-callback"), {"reference": "ORD-404-1"}).status_code == 404


class TestStatusAndControl:
    def test_status_includes_loop_snapshot(self, api_client, pending_record):
        response = api_client.get(reverse("payment-status", args=[REFERENCE]))

        assert response.status_code == 200
        assert response.data["status"] == "pending"
        assert response.data["order_number"] == "ORD-100"
        assert response.data["reconciliation"] is None

    def test_status_unknown_reference(self, api_client, db):
        assert api_client.get(reverse("payment-status", args=["ORD-404-1"])).status_code == 404

    def test_resume_polls_same_reference(self, api_client, pending_record, scheduled):
        response = api_client.post(reverse("payment-reconcile", args=[REFERENCE]))

        assert response.status_code == 202
        assert scheduled.call_args[0][0] == REFERENCE
        assert PaymentRecord.objects.count() == 1

    def test_resume_on_resolved_record_does_nothing(self, api_client, pending_record, store, scheduled):
        store.write_if_pending(REFERENCE, "success", "TXN-1", {}, source="webhook")

        response = api_client.post(reverse("payment-reconcile", args=[REFERENCE]))

        assert response.status_code == 200
        assert response.data["status"] == "success"
        scheduled.assert_not_called()

    def test_cancel_releases_run(self, api_client, pending_record, scheduled):
        api_client.post(reverse("payment-reconcile", args=[REFERENCE]))
        run_id = scheduled.call_args[0][1]

        response = api_client.post(reverse("payment-cancel", args=[REFERENCE]))

        assert response.status_code == 200
        assert not is_current_run(REFERENCE, run_id)
        assert last_loop_state(REFERENCE) is None
        assert PaymentRecord.objects.get(reference=REFERENCE).status == "pending"


class TestRecords:
    def test_listing_requires_staff(self, api_client, pending_record):
        assert api_client.get(reverse("payment-record-list")).status_code in (401, 403)

    def test_staff_can_filter_and_inspect(self, admin_client, pending_record, store):
        store.write_if_pending(REFERENCE, "success", "TXN-1", {"id": 1}, source="fallback")

        listing = admin_client.get(reverse("payment-record-list"), {"status": "success"})
        detail = admin_client.get(reverse("payment-record-detail", args=[REFERENCE]))

        assert listing.status_code == 200
        assert [row["reference"] for row in listing.json()["results"]] == [REFERENCE]
        assert detail.json()["raw_payload"] == {"id": 1}
        assert detail.json()["resolved_by"] == "fallback"
