"""Domain events for the Orders bounded context.

Events are written to the transactional outbox inside the same database
transaction as the order write that produced them, then relayed to the
in-process bus by ``relay_outbox_events``.  Every event is registered
so the relay can rebuild it from its stored JSON payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from shared.domain.events import DomainEvent, register_event


@register_event
@dataclass(frozen=True, kw_only=True)
class OrderStatusChanged(DomainEvent):
    """Raised on every committed order write."""

    from_status: Optional[str]
    to_status: str
    actor_role: str
    version: int


@register_event
@dataclass(frozen=True, kw_only=True)
class OrderCancelled(DomainEvent):
    """Raised when an order reaches ``cancelled``."""

    cancellation_id: UUID
    cancelled_by: str
    reason: str
    refund_amount: Decimal
    is_admin_override: bool = False


@register_event
@dataclass(frozen=True, kw_only=True)
class CancellationCompleted(DomainEvent):
    """Raised once the refund for a cancellation has gone through."""

    cancellation_id: UUID
    refund_amount: Decimal


@register_event
@dataclass(frozen=True, kw_only=True)
class RefundFailed(DomainEvent):
    """Raised when the processor reports a refund failure (manual follow-up)."""

    cancellation_id: UUID
    refund_amount: Decimal
    reason: str


@register_event
@dataclass(frozen=True, kw_only=True)
class PointsRestoreRequested(DomainEvent):
    """Loyalty subsystem: give consumed points back to the customer."""

    customer_id: UUID
    amount: Decimal
    cancellation_id: UUID


@register_event
@dataclass(frozen=True, kw_only=True)
class CouponRestoreRequested(DomainEvent):
    """Loyalty subsystem: make the consumed coupon usable again."""

    customer_id: UUID
    coupon_id: str
    cancellation_id: UUID

