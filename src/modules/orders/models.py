"""Order, OrderStatusHistory, and CancellationRecord models.

Business rules implemented:
- Status only moves forward along the transition graph, or into the single
  terminal ``cancelled`` state (enforced by the validator + versioned write).
- Phase timestamps (``confirmed_at`` ... ``cancelled_at``) are write-once:
  the repository only stamps a field whose column is still NULL.
- ``version`` is the optimistic-concurrency token; every committed write
  bumps it by exactly one.
- Every committed transition produces an ``OrderStatusHistory`` row.
- At most one non-rejected ``CancellationRecord`` exists per order
  (database constraint), so a cancelled order has exactly one record.
- Monetary breakdown is immutable after placement.
"""

from __future__ import annotations

import secrets
from decimal import Decimal
from typing import Any

from django.db import models
from django.utils import timezone

from modules.core.models import BaseModel
from modules.orders.constants import (
    FEES_RENDERED_STATES,
    ORDER_NUMBER_MAX_RETRIES,
    TERMINAL_STATES,
    ActorRole,
    CancelReasonCategory,
    CancelStatus,
    OrderStatus,
    RefundStatus,
)
from shared.domain.events import DomainEventMixin


_MONEY = {"max_digits": 12, "decimal_places": 2, "default": Decimal("0.00")}


class Order(DomainEventMixin, BaseModel):
    """Order aggregate root.

    ``order_number`` is a human-readable identifier auto-generated on first
    save (format: ``ORD-YYYYMMDD-XXXXXX``).  The UUIDv7 ``id`` is used for
    all internal references and API lookups.

    Customers, restaurants and riders live in other systems; only their
    identifiers are stored here.
    """

    order_number: models.CharField = models.CharField(
        max_length=20, unique=True, editable=False
    )
    customer_id: models.UUIDField = models.UUIDField(db_index=True)
    restaurant_id: models.UUIDField = models.UUIDField(db_index=True)
    rider_id: models.UUIDField = models.UUIDField(null=True, blank=True, db_index=True)
    payment_id: models.CharField = models.CharField(max_length=100, blank=True, default="")

    status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
    )
    version: models.PositiveIntegerField = models.PositiveIntegerField(default=1)

    # Monetary breakdown
    menu_amount: models.DecimalField = models.DecimalField(**_MONEY)
    discount_amount: models.DecimalField = models.DecimalField(**_MONEY)
    points_used: models.DecimalField = models.DecimalField(**_MONEY)
    delivery_fee: models.DecimalField = models.DecimalField(**_MONEY)
    platform_fee: models.DecimalField = models.DecimalField(**_MONEY)
    total_amount: models.DecimalField = models.DecimalField(**_MONEY)
    coupon_id: models.CharField = models.CharField(  # noqa: DJ01
        max_length=100, null=True, blank=True, default=None
    )

    # Phase timestamps (write-once)
    confirmed_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    prepared_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    picked_up_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    delivered_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    cancelled_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)

    # Owner-supplied, informational only
    estimated_prep_minutes: models.PositiveIntegerField = models.PositiveIntegerField(
        null=True, blank=True
    )
    estimated_delivery_at: models.DateTimeField = models.DateTimeField(
        null=True, blank=True
    )
    delivery_proof: models.CharField = models.CharField(
        max_length=500, blank=True, default=""
    )

    # Cancellation metadata
    cancelled_reason: models.CharField = models.CharField(
        max_length=40, choices=CancelReasonCategory.choices, blank=True, default=""
    )
    cancelled_by: models.CharField = models.CharField(
        max_length=20, choices=ActorRole.choices, blank=True, default=""
    )
    rejection_reason: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="orders_status_idx"),
            models.Index(fields=["status", "created_at"], name="orders_status_created_idx"),
        ]

    # ------------------------------------------------------------------
    # State Machine helpers
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` if the order is in a terminal state."""
        return self.status in TERMINAL_STATES

    @property
    def fees_rendered(self) -> bool:
        """Delivery and platform fees count as service once picked up."""
        return self.status in FEES_RENDERED_STATES

    # ------------------------------------------------------------------
    # Order number generation
    # ------------------------------------------------------------------

    @staticmethod
    def generate_order_number() -> str:
        """Generate a human-readable order number: ``ORD-YYYYMMDD-XXXXXX``."""
        now = timezone.now()
        suffix = secrets.token_hex(3).upper()
        return f"ORD-{now:%Y%m%d}-{suffix}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self.order_number:
            for _attempt in range(ORDER_NUMBER_MAX_RETRIES):
                candidate = self.generate_order_number()
                if not Order.objects.filter(order_number=candidate).exists():
                    self.order_number = candidate
                    break
            else:
                raise RuntimeError(
                    f"Failed to generate unique order_number after "
                    f"{ORDER_NUMBER_MAX_RETRIES} attempts"
                )
        super().save(*args, **kwargs)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def __str__(self) -> str:
        return f"{self.order_number} ({self.status} v{self.version})"


class OrderStatusHistory(BaseModel):
    """Append-only audit trail for committed order writes.

    One row per committed version.  ``actor_id`` is ``None`` for system
    writes (e.g. the owner-timeout sweep).
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.PROTECT,
        related_name="status_history",
    )
    old_status: models.CharField = models.CharField(  # noqa: DJ01
        max_length=20,
        choices=OrderStatus.choices,
        null=True,
        blank=True,
    )
    new_status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
    )
    version: models.PositiveIntegerField = models.PositiveIntegerField()
    actor_role: models.CharField = models.CharField(
        max_length=20, choices=ActorRole.choices
    )
    actor_id: models.UUIDField = models.UUIDField(null=True, blank=True)
    notes: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_status_history"
        ordering = ["version"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "version"], name="osh_order_version_uniq"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} v{self.version}: {self.old_status} -> {self.new_status}"


class CancellationRecord(BaseModel):
    """Decision record for a cancellation attempt.

    ``cancel_status`` is an explicit tagged state:
    ``requested → approved → completed`` or ``requested → rejected``.
    Only decided records are persisted.  ``refund_status`` trails the
    order asynchronously: ``pending → processing → completed | failed``.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.PROTECT,
        related_name="cancellations",
    )
    requested_by: models.CharField = models.CharField(
        max_length=20, choices=ActorRole.choices
    )
    requested_by_id: models.UUIDField = models.UUIDField(null=True, blank=True)
    reason_category: models.CharField = models.CharField(
        max_length=40, choices=CancelReasonCategory.choices
    )
    reason_detail: models.TextField = models.TextField(blank=True, default="")
    refund_rate: models.DecimalField = models.DecimalField(
        max_digits=5, decimal_places=4
    )
    refund_amount: models.DecimalField = models.DecimalField(**_MONEY)
    fees_refunded: models.BooleanField = models.BooleanField(default=False)
    is_admin_override: models.BooleanField = models.BooleanField(default=False)

    cancel_status: models.CharField = models.CharField(
        max_length=20,
        choices=CancelStatus.choices,
        default=CancelStatus.REQUESTED,
    )
    refund_status: models.CharField = models.CharField(
        max_length=20,
        choices=RefundStatus.choices,
        default=RefundStatus.PENDING,
    )
    rejection_reason: models.TextField = models.TextField(blank=True, default="")

    restore_loyalty: models.BooleanField = models.BooleanField(default=False)
    points_restored: models.BooleanField = models.BooleanField(default=False)
    coupon_restored: models.BooleanField = models.BooleanField(default=False)

    gateway_ref: models.CharField = models.CharField(max_length=100, blank=True, default="")
    failure_reason: models.TextField = models.TextField(blank=True, default="")
    refund_attempts: models.PositiveIntegerField = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_cancellations"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=~models.Q(cancel_status=CancelStatus.REJECTED),
                name="cancellation_one_live_per_order",
            ),
        ]
        indexes = [
            models.Index(
                fields=["refund_status", "cancel_status"],
                name="cancel_refund_state_idx",
            ),
        ]

    # ------------------------------------------------------------------
    # Tagged-state transitions (in-memory, persisted by the repository)
    # ------------------------------------------------------------------

    def approve(self) -> None:
        self._require(CancelStatus.REQUESTED, CancelStatus.APPROVED)
        self.cancel_status = CancelStatus.APPROVED
        if self.refund_amount <= 0:
            # Nothing to send to the processor.
            self.cancel_status = CancelStatus.COMPLETED
            self.refund_status = RefundStatus.COMPLETED

    def reject(self, reason: str) -> None:
        self._require(CancelStatus.REQUESTED, CancelStatus.REJECTED)
        self.cancel_status = CancelStatus.REJECTED
        self.rejection_reason = reason

    def _require(self, expected: str, target: str) -> None:
        if self.cancel_status != expected:
            raise ValueError(
                f"Cancellation cannot move from {self.cancel_status} to {target}."
            )

    @property
    def awaiting_refund(self) -> bool:
        return (
            self.cancel_status == CancelStatus.APPROVED
            and self.refund_status == RefundStatus.PENDING
        )

    def __str__(self) -> str:
        return (
            f"Cancellation {self.id} of {self.order_id} "
            f"[{self.cancel_status}/{self.refund_status}]"
        )
