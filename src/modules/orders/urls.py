"""Order URL configuration."""

from __future__ import annotations

from django.urls import path
from rest_framework.routers import DefaultRouter

from modules.orders.views import CancellationViewSet, OrderViewSet, RefundCallbackView

router = DefaultRouter(trailing_slash=True)
router.register("orders", OrderViewSet, basename="order")
router.register("cancellations", CancellationViewSet, basename="cancellation")

urlpatterns = [
    path("refunds/callback/", RefundCallbackView.as_view(), name="refund_callback"),
    *router.urls,
]
