from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    CancelReconciliationView,
    CheckoutView,
    PaymentRecordViewSet,
    PaymentStatusView,
    PaystackCallbackView,
    PaystackWebhookView,
    ReconcileView,
)

router = DefaultRouter()
router.register("records", PaymentRecordViewSet, basename="payment-record")

urlpatterns = router.urls + [
    path("checkout/", CheckoutView.as_view(), name="payment-checkout"),
    path("paystack/webhook/", PaystackWebhookView.as_view(), name="paystack-webhook"),
    path("callback/", PaystackCallbackView.as_view(), name="paystack-callback"),
    path("<str:reference>/", PaymentStatusView.as_view(), name="payment-status"),
    path("<str:reference>/reconcile/", ReconcileView.as_view(), name="payment-reconcile"),
    path("<str:reference>/cancel/", CancelReconciliationView.as_view(), name="payment-cancel"),
]
