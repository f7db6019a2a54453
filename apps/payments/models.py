from django.db import models


class PaymentRecord(models.Model):
    """
    Reconciled status of one checkout attempt, keyed by its payment reference.

    Created as ``pending`` right after the gateway accepts the payment and
    moved to a terminal status exactly once, by whichever writer gets there
    first (see ``PaymentRecordStore.write_if_pending``). Never deleted.
    """

    STATUS_PENDING = "pending"
    STATUS_SUCCESS = "success"
    STATUS_FAILED = "failed"

    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_SUCCESS, "Success"),
        (STATUS_FAILED, "Failed"),
    ]
    TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED)

    SOURCE_CHOICES = [
        ("webhook", "Webhook"),
        ("fallback", "Fallback verification"),
        ("callback", "Redirect callback"),
        ("sweeper", "Stale payment sweeper"),
    ]

    reference = models.CharField(max_length=100, primary_key=True)
    order = models.ForeignKey(
        "orders.CustomerOrder",
        on_delete=models.PROTECT,
        related_name="payment_records",
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    gateway_transaction_id = models.CharField(max_length=100, blank=True, null=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    raw_payload = models.JSONField(blank=True, null=True)
    resolved_by = models.CharField(max_length=20, choices=SOURCE_CHOICES, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    resolved_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        indexes = [models.Index(fields=["status", "created_at"], name="payment_status_created_idx")]

    def __str__(self) -> str:
        return f"{self.reference} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class PaymentLog(models.Model):
    """Append-only audit trail of gateway payloads and terminal write attempts."""

    provider = models.CharField(max_length=50, default="paystack")
    reference = models.CharField(max_length=100, db_index=True)
    source = models.CharField(max_length=20)
    event = models.CharField(max_length=50, blank=True)
    raw_payload = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.source}:{self.event} {self.reference}"
