from decimal import Decimal
from unittest import mock

import pytest
from django.core.cache import cache

from apps.orders.models import CustomerOrder
from apps.payments.gateway import VerificationResult
from apps.payments.reconciliation import ReconciliationPolicy
from apps.payments.store import PaymentRecordStore

REFERENCE = "ORD-100-171234"


@pytest.fixture(autouse=True)
def _clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def order(db):
    return CustomerOrder.objects.create(
        order_number="ORD-100",
        customer_email="buyer@example.com",
        customer_name="Ada Buyer",
        total_amount=Decimal("500.00"),
    )


@pytest.fixture
def store():
    return PaymentRecordStore()


@pytest.fixture
def pending_record(order, store):
    return store.create(REFERENCE, order, Decimal("500.00"))


@pytest.fixture
def policy():
    return ReconciliationPolicy(poll_interval=0.01, verify_after_attempts=3, max_attempts=12)


@pytest.fixture
def gateway():
    client = mock.Mock()
    client.verify.return_value = VerificationResult(status="pending", raw={"status": True, "data": {"status": "ongoing"}})
    return client


def _verified(status: str, transaction_id: str = "TXN-9", amount: str = "500.00") -> VerificationResult:
    return VerificationResult(
        status=status,
        transaction_id=transaction_id,
        amount=Decimal(amount),
        raw={"status": True, "data": {"id": transaction_id, "status": status, "amount": int(Decimal(amount) * 100)}},
    )


@pytest.fixture
def verified():
    """Factory for terminal gateway verification results."""
    return _verified


@pytest.fixture
def scheduled():
    with mock.patch("apps.payments.tasks.schedule_reconciliation") as schedule:
        yield schedule
