"""Order DRF serializers for API input/output.

The serializer operates at the Interface layer (API Views).
Business logic lives in the Service Layer, which receives
Pydantic DTOs from ``dtos.py``.
"""

from __future__ import annotations

from rest_framework import serializers

from modules.orders.constants import CancelReasonCategory, OrderAction
from modules.orders.models import CancellationRecord, Order, OrderStatusHistory

_MONEY = {"max_digits": 12, "decimal_places": 2, "min_value": 0}

# ---------------------------------------------------------------------------
# Input Serializers
# ---------------------------------------------------------------------------


class PlaceOrderSerializer(serializers.Serializer):
    """Validates the order placement payload (monetary breakdown)."""

    customer_id = serializers.UUIDField(required=False)
    restaurant_id = serializers.UUIDField()
    payment_id = serializers.CharField(max_length=100, required=False, default="", allow_blank=True)
    menu_amount = serializers.DecimalField(**_MONEY)
    discount_amount = serializers.DecimalField(**_MONEY, required=False, default=0)
    points_used = serializers.DecimalField(**_MONEY, required=False, default=0)
    delivery_fee = serializers.DecimalField(**_MONEY, required=False, default=0)
    platform_fee = serializers.DecimalField(**_MONEY, required=False, default=0)
    total_amount = serializers.DecimalField(**_MONEY)
    coupon_id = serializers.CharField(max_length=100, required=False, allow_null=True, default=None)


class CancellationRequestSerializer(serializers.Serializer):
    reason_category = serializers.ChoiceField(choices=CancelReasonCategory.choices)
    reason_detail = serializers.CharField(required=False, default="", allow_blank=True)
    refund_rate = serializers.DecimalField(
        max_digits=5,
        decimal_places=4,
        min_value=0,
        max_value=1,
        required=False,
        allow_null=True,
        default=None,
    )
    fees_refundable = serializers.BooleanField(required=False, default=False)


class AdvanceStatusSerializer(serializers.Serializer):
    """Validates a non-cancellation action request."""

    action = serializers.ChoiceField(choices=OrderAction.choices)
    estimated_prep_minutes = serializers.IntegerField(
        min_value=1, max_value=240, required=False, allow_null=True, default=None
    )
    start_preparing = serializers.BooleanField(required=False, default=True)
    delivery_proof = serializers.CharField(required=False, default="", allow_blank=True)
    reason = serializers.CharField(required=False, default="", allow_blank=True)


class RefundCallbackSerializer(serializers.Serializer):
    cancellation_id = serializers.UUIDField()
    success = serializers.BooleanField()
    gateway_ref = serializers.CharField(required=False, default="", allow_blank=True)
    reason = serializers.CharField(required=False, default="", allow_blank=True)


# ---------------------------------------------------------------------------
# Output Serializers (Read)
# ---------------------------------------------------------------------------


class StatusHistorySerializer(serializers.ModelSerializer):
    """Read serializer for order status history records."""

    class Meta:
        model = OrderStatusHistory
        fields = [
            "id",
            "old_status",
            "new_status",
            "version",
            "actor_role",
            "actor_id",
            "notes",
            "created_at",
        ]
        read_only_fields = fields


class CancellationRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = CancellationRecord
        fields = [
            "id",
            "order_id",
            "requested_by",
            "requested_by_id",
            "reason_category",
            "reason_detail",
            "refund_rate",
            "refund_amount",
            "fees_refunded",
            "is_admin_override",
            "cancel_status",
            "refund_status",
            "rejection_reason",
            "restore_loyalty",
            "gateway_ref",
            "failure_reason",
            "refund_attempts",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Read serializer for orders with the full status history."""

    status_history = StatusHistorySerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "customer_id",
            "restaurant_id",
            "rider_id",
            "status",
            "version",
            "menu_amount",
            "discount_amount",
            "points_used",
            "delivery_fee",
            "platform_fee",
            "total_amount",
            "coupon_id",
            "estimated_prep_minutes",
            "estimated_delivery_at",
            "confirmed_at",
            "prepared_at",
            "picked_up_at",
            "delivered_at",
            "cancelled_at",
            "cancelled_reason",
            "cancelled_by",
            "rejection_reason",
            "created_at",
            "updated_at",
            "status_history",
        ]
        read_only_fields = fields


class SettlementOrderSerializer(serializers.ModelSerializer):
    """Lightweight serializer for the settlement listing (no nested relations)."""

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "restaurant_id",
            "rider_id",
            "status",
            "total_amount",
            "delivery_fee",
            "platform_fee",
            "delivered_at",
            "cancelled_at",
            "cancelled_by",
        ]
        read_only_fields = fields


class CancelabilitySerializer(serializers.Serializer):
    can_cancel = serializers.BooleanField()
    refund_rate = serializers.DecimalField(max_digits=5, decimal_places=4)
    refund_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    message = serializers.CharField()


class CancellationResultSerializer(serializers.Serializer):
    cancellation_id = serializers.UUIDField()
    cancel_status = serializers.CharField()
    refund_status = serializers.CharField()
    refund_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    refund_rate = serializers.DecimalField(max_digits=5, decimal_places=4)


class AdvanceStatusResultSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    new_status = serializers.CharField()
    version = serializers.IntegerField()
    updated_at = serializers.DateTimeField(allow_null=True)
