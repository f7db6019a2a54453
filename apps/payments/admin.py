from django.contrib import admin

from .models import PaymentLog, PaymentRecord


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = ("reference", "order", "status", "amount", "resolved_by", "created_at", "resolved_at")
    search_fields = ("reference", "gateway_transaction_id", "order__order_number")
    list_filter = ("status", "resolved_by")
    # Status only changes through write_if_pending.
    readonly_fields = (
        "reference",
        "order",
        "status",
        "gateway_transaction_id",
        "amount",
        "raw_payload",
        "resolved_by",
        "resolved_at",
    )


@admin.register(PaymentLog)
class PaymentLogAdmin(admin.ModelAdmin):
    list_display = ("provider", "reference", "source", "event", "created_at")
    search_fields = ("provider", "reference")
    list_filter = ("source",)
