from django.contrib import admin

from .models import CustomerOrder


@admin.register(CustomerOrder)
class CustomerOrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "customer_email", "payment_status", "total_amount", "paid_at")
    search_fields = ("order_number", "customer_email", "payment_reference")
    list_filter = ("payment_status",)
    readonly_fields = ("payment_reference", "paystack_transaction_id", "paid_at")
