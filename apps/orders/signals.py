from django.dispatch import Signal

# Sent once per order, when a payment first marks it as paid.
# Receivers get ``order_id``, ``reference`` and ``transaction_id``.
order_paid = Signal()
