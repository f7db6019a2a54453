from django.contrib import admin
from django.urls import include, path
from drf_yasg import openapi
from drf_yasg.views import get_schema_view
from rest_framework import permissions

schema_view = get_schema_view(
    openapi.Info(
        title="Paywatch API",
        default_version="v1",
        description="Checkout initialization and payment confirmation reconciliation.",
    ),
    public=True,
    permission_classes=[permissions.AllowAny],
)

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/payments/", include("apps.payments.urls")),
    path("api/docs/", schema_view.with_ui("swagger", cache_timeout=0), name="api-docs"),
]
