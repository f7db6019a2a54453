import logging
from typing import Optional

from django.utils import timezone

from .models import CustomerOrder
from .signals import order_paid

logger = logging.getLogger(__name__)


def finalize_order(order_id, reference: str, transaction_id: Optional[str]) -> bool:
    """
    Mark the order as paid by ``reference``.

    Only the first caller wins: the update is conditional on the order still
    being pending, so a webhook and a polling loop resolving the same payment
    cannot both finalize it. Returns True when this call applied the change.
    """
    now = timezone.now()
    updated = CustomerOrder.objects.filter(id=order_id, payment_status="pending").update(
        payment_status="paid",
        payment_reference=reference,
        paystack_transaction_id=transaction_id,
        paid_at=now,
        updated_at=now,
    )
    if updated:
        logger.info("Order %s finalized by payment %s (transaction %s)", order_id, reference, transaction_id)
        order_paid.send(sender=CustomerOrder, order_id=order_id, reference=reference, transaction_id=transaction_id)
        return True

    logger.info("Order %s already finalized; ignoring payment %s", order_id, reference)
    return False
