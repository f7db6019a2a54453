from decimal import Decimal

from rest_framework import serializers

from .models import PaymentRecord
from .notifier import MESSAGE_STATUSES, MESSAGE_TYPE


class CheckoutInitSerializer(serializers.Serializer):
    """
    Input payload for starting a Paystack checkout for an existing order.
    """

    order_number = serializers.CharField(max_length=20)
    email = serializers.EmailField()


class PaymentRecordSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source="order.order_number", read_only=True)

    class Meta:
        model = PaymentRecord
        fields = [
            "reference",
            "order",
            "order_number",
            "status",
            "gateway_transaction_id",
            "amount",
            "resolved_by",
            "created_at",
            "updated_at",
            "resolved_at",
        ]
        read_only_fields = fields


class PaymentRecordDetailSerializer(PaymentRecordSerializer):
    class Meta(PaymentRecordSerializer.Meta):
        fields = PaymentRecordSerializer.Meta.fields + ["raw_payload"]
        read_only_fields = fields


class PaymentStatusSerializer(serializers.Serializer):
    """
    What the checkout page polls: the record status plus the state of the
    reconciliation loop working on it, if any.
    """

    reference = serializers.CharField()
    status = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))
    order_number = serializers.CharField()
    reconciliation = serializers.DictField(allow_null=True)


class PaymentStatusMessageSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=[MESSAGE_TYPE])
    reference = serializers.CharField()
    status = serializers.ChoiceField(choices=list(MESSAGE_STATUSES))

