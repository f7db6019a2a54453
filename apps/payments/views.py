import hashlib
import hmac
import json
import logging

from django.conf import settings
from rest_framework import permissions, status, views, viewsets
from rest_framework.response import Response

from apps.orders.models import CustomerOrder

from . import services
from .exceptions import GatewayNotConfigured, InitializationFailed, OrderAlreadyPaid
from .models import PaymentRecord
from .reconciliation import OUTCOME_MESSAGES
from .serializers import (
    CheckoutInitSerializer,
    PaymentRecordDetailSerializer,
    PaymentRecordSerializer,
    PaymentStatusMessageSerializer,
    PaymentStatusSerializer,
)
from .tasks import start_reconciliation, stop_reconciliation

logger = logging.getLogger(__name__)

PENDING_MESSAGE = "Your payment is being processed. This may take a few moments."


def _record_or_none(reference: str):
    return PaymentRecord.objects.select_related("order").filter(reference=reference).first()


class CheckoutView(views.APIView):
    """
    Initialize a Paystack transaction for an order and return the
    authorization URL. Every call issues a new payment reference.
    """

    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        serializer = CheckoutInitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = CustomerOrder.objects.filter(order_number=data["order_number"]).first()
        if not order:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)

        try:
            session = services.start_checkout(order, data["email"])
        except OrderAlreadyPaid:
            return Response({"detail": "This order has already been paid."}, status=status.HTTP_409_CONFLICT)
        except GatewayNotConfigured:
            return Response(
                {"detail": "Payment provider is not configured. Please try again later."},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        except InitializationFailed as exc:
            return Response(
                {"detail": OUTCOME_MESSAGES["initialization_failed"], "error": str(exc)},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        except ValueError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        start_reconciliation(session.reference)

        return Response(
            {
                "authorization_url": session.authorization_url,
                "reference": session.reference,
                "customer_order_id": str(order.id),
                "total_amount": str(order.total_amount),
                "poll_interval": session.poll_interval,
            },
            status=status.HTTP_201_CREATED,
        )


class PaymentStatusView(views.APIView):
    """Record status for a reference, as polled by the checkout page."""

    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def get(self, request, reference: str, *args, **kwargs):
        record = _record_or_none(reference)
        if not record:
            return Response({"detail": "Payment not found."}, status=status.HTTP_404_NOT_FOUND)

        serializer = PaymentStatusSerializer(
            {
                "reference": record.reference,
                "status": record.status,
                "amount": record.amount,
                "order_number": record.order.order_number,
                "reconciliation": services.last_loop_state(reference),
            }
        )
        return Response(serializer.data)


class ReconcileView(views.APIView):
    """
    Resume reconciliation for an order the customer came back to. Polls the
    same reference again; it never issues a new one.
    """

    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request, reference: str, *args, **kwargs):
        record = _record_or_none(reference)
        if not record:
            return Response({"detail": "Payment not found."}, status=status.HTTP_404_NOT_FOUND)
        if record.is_terminal:
            return Response({"reference": reference, "status": record.status}, status=status.HTTP_200_OK)

        start_reconciliation(reference)
        return Response({"reference": reference, "status": record.status}, status=status.HTTP_202_ACCEPTED)


class CancelReconciliationView(views.APIView):
    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request, reference: str, *args, **kwargs):
        record = _record_or_none(reference)
        if not record:
            return Response({"detail": "Payment not found."}, status=status.HTTP_404_NOT_FOUND)
        stop_reconciliation(reference)
        return Response({"reference": reference, "status": record.status}, status=status.HTTP_200_OK)


class PaystackWebhookView(views.APIView):
    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        raw_body = request.body
        signature = request.headers.get("x-paystack-signature", "")
        secret_key = getattr(settings, "PAYSTACK_SECRET_KEY", "") or ""

        if not signature or not secret_key:
            logger.warning("Rejected Paystack webhook without signature")
            return Response({"detail": "Missing signature"}, status=status.HTTP_401_UNAUTHORIZED)

        expected = hmac.new(secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            logger.warning("Rejected Paystack webhook with invalid signature")
            return Response({"detail": "Invalid signature"}, status=status.HTTP_401_UNAUTHORIZED)

        try:
            event = json.loads(raw_body or b"{}")
        except ValueError:
            return Response({"detail": "Invalid JSON body"}, status=status.HTTP_400_BAD_REQUEST)
        if not isinstance(event, dict):
            return Response({"detail": "Invalid event"}, status=status.HTTP_400_BAD_REQUEST)

        outcome = services.ingest_webhook(event)
        return Response(
            {"status": "ok", "outcome": outcome.value if outcome else None},
            status=status.HTTP_200_OK,
        )


class PaystackCallbackView(views.APIView):
    """
    Verify a Paystack transaction after the buyer is redirected back
    from Paystack using the ``reference`` query parameter.

    Runs in the popup the checkout opened. A terminal result is passed on to
    the checkout page's reconciliation loop and echoed back as
    ``post_message`` for the popup to hand to its opener.
    """

    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def get(self, request, *args, **kwargs):
        reference = request.query_params.get("reference")
        if not reference:
            return Response({"detail": "Missing reference"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            record_status = services.verify_from_callback(reference)
        except PaymentRecord.DoesNotExist:
            return Response({"detail": "Payment not found for this reference."}, status=status.HTTP_404_NOT_FOUND)

        body = {
            "reference": reference,
            "status": record_status,
            "message": OUTCOME_MESSAGES.get(record_status, PENDING_MESSAGE),
            "post_message": None,
        }
        if record_status in PaymentRecord.TERMINAL_STATUSES:
            message = PaymentStatusMessageSerializer(
                {"type": "payment_status", "reference": reference, "status": record_status}
            )
            body["post_message"] = message.data
        return Response(body, status=status.HTTP_200_OK)


class PaymentRecordViewSet(viewsets.ReadOnlyModelViewSet):
    """Support lookup of payment attempts."""

    queryset = PaymentRecord.objects.select_related("order").order_by("-created_at")
    serializer_class = PaymentRecordSerializer
    permission_classes = [permissions.IsAdminUser]
    filterset_fields = ["status", "resolved_by", "order__order_number"]
    search_fields = ["reference", "order__order_number", "gateway_transaction_id"]
    ordering_fields = ["created_at", "amount"]

    def get_serializer_class(self):
        if self.action == "retrieve":
            return PaymentRecordDetailSerializer
        return PaymentRecordSerializer
