"""Order lifecycle constants.

Defines the tagged states (order status, cancellation status, refund
status), the actor roles and actions, the role-aware transition table
and the catalogue of cancellation reasons.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from django.db import models


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    PREPARING = "preparing", "Preparing"
    READY = "ready", "Ready for pickup"
    PICKED_UP = "picked_up", "Picked up"
    DELIVERING = "delivering", "Delivering"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"


class ActorRole(models.TextChoices):
    CUSTOMER = "customer", "Customer"
    OWNER = "owner", "Restaurant owner"
    RIDER = "rider", "Rider"
    ADMIN = "admin", "Admin"
    SYSTEM = "system", "System"


class OrderAction(models.TextChoices):
    ACCEPT = "accept", "Accept order"
    REJECT = "reject", "Reject order"
    START_PREPARING = "start_preparing", "Start preparing"
    MARK_READY = "mark_ready", "Mark ready"
    ACCEPT_DELIVERY = "accept_delivery", "Accept delivery"
    PICK_UP = "pick_up", "Pick up"
    START_DELIVERY = "start_delivery", "Start delivery"
    COMPLETE_DELIVERY = "complete_delivery", "Complete delivery"
    CANCEL = "cancel", "Cancel"
    EXPIRE = "expire", "Expire (owner timeout)"


class CancelStatus(models.TextChoices):
    REQUESTED = "requested", "Requested"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    COMPLETED = "completed", "Completed"


class RefundStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class CancelReasonCategory(models.TextChoices):
    CUSTOMER_CHANGE_MIND = "customer_change_mind", "Changed mind"
    CUSTOMER_WRONG_ORDER = "customer_wrong_order", "Wrong order"
    CUSTOMER_DUPLICATE_ORDER = "customer_duplicate_order", "Duplicate order"
    RESTAURANT_CLOSED = "restaurant_closed", "Restaurant closed"
    RESTAURANT_OUT_OF_STOCK = "restaurant_out_of_stock", "Out of stock"
    RESTAURANT_TOO_BUSY = "restaurant_too_busy", "Too busy"
    DELIVERY_ISSUE = "delivery_issue", "Delivery issue"
    SYSTEM_ERROR = "system_error", "System error"
    OWNER_REJECTED = "owner_rejected", "Rejected by restaurant"
    TIMEOUT = "timeout", "No restaurant response"
    OTHER = "other", "Other"


TERMINAL_STATES: set[str] = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

# Forward order of the fulfilment path; ``cancelled`` sits outside of it.
STATUS_SEQUENCE: tuple[str, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERING,
    OrderStatus.DELIVERED,
)

# Statuses in which the delivery/platform fees count as rendered service.
FEES_RENDERED_STATES: set[str] = {
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERING,
    OrderStatus.DELIVERED,
}

# Write-once phase timestamp stamped when an order enters a status.
PHASE_TIMESTAMP_FIELDS: dict[str, str] = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.READY: "prepared_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class TransitionRule:
    """One edge of the order state machine and the roles allowed to take it."""

    action: str
    from_status: str
    to_status: str
    roles: frozenset[str]
    description: str = ""


def _cancel_rules() -> list[TransitionRule]:
    rules = []
    for status in STATUS_SEQUENCE:
        if status in TERMINAL_STATES:
            continue
        roles = {ActorRole.CUSTOMER, ActorRole.ADMIN}
        if status == OrderStatus.PENDING:
            roles.add(ActorRole.OWNER)
        rules.append(
            TransitionRule(
                action=OrderAction.CANCEL,
                from_status=status,
                to_status=OrderStatus.CANCELLED,
                roles=frozenset(roles),
                description="Order cancelled",
            )
        )
    return rules


TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        OrderAction.ACCEPT,
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        frozenset({ActorRole.OWNER}),
        "Restaurant accepted the order",
    ),
    TransitionRule(
        OrderAction.REJECT,
        OrderStatus.PENDING,
        OrderStatus.CANCELLED,
        frozenset({ActorRole.OWNER}),
        "Restaurant rejected the order",
    ),
    TransitionRule(
        OrderAction.EXPIRE,
        OrderStatus.PENDING,
        OrderStatus.CANCELLED,
        frozenset({ActorRole.SYSTEM}),
        "No restaurant response within the SLA window",
    ),
    TransitionRule(
        OrderAction.START_PREPARING,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        frozenset({ActorRole.OWNER, ActorRole.SYSTEM}),
        "Cooking started",
    ),
    TransitionRule(
        OrderAction.MARK_READY,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        frozenset({ActorRole.OWNER}),
        "Cooking finished",
    ),
    TransitionRule(
        OrderAction.PICK_UP,
        OrderStatus.READY,
        OrderStatus.PICKED_UP,
        frozenset({ActorRole.RIDER}),
        "Rider picked up the order",
    ),
    TransitionRule(
        OrderAction.START_DELIVERY,
        OrderStatus.PICKED_UP,
        OrderStatus.DELIVERING,
        frozenset({ActorRole.RIDER}),
        "Delivery started",
    ),
    TransitionRule(
        OrderAction.COMPLETE_DELIVERY,
        OrderStatus.DELIVERING,
        OrderStatus.DELIVERED,
        frozenset({ActorRole.RIDER}),
        "Order delivered",
    ),
    *_cancel_rules(),
)

# Actions that end in ``cancelled`` and therefore go through the
# cancellation path (eligibility, refund, cancellation record).
CANCELLATION_ACTIONS: set[str] = {
    OrderAction.CANCEL,
    OrderAction.REJECT,
    OrderAction.EXPIRE,
}

# Rider assignment is the only versioned write that keeps the status.
ASSIGNMENT_ACTION_STATES: set[str] = {
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
}

CANCEL_REASONS_BY_ROLE: dict[str, set[str]] = {
    ActorRole.CUSTOMER: {
        CancelReasonCategory.CUSTOMER_CHANGE_MIND,
        CancelReasonCategory.CUSTOMER_WRONG_ORDER,
        CancelReasonCategory.CUSTOMER_DUPLICATE_ORDER,
        CancelReasonCategory.OTHER,
    },
    ActorRole.OWNER: {
        CancelReasonCategory.RESTAURANT_CLOSED,
        CancelReasonCategory.RESTAURANT_OUT_OF_STOCK,
        CancelReasonCategory.RESTAURANT_TOO_BUSY,
        CancelReasonCategory.OWNER_REJECTED,
        CancelReasonCategory.OTHER,
    },
    ActorRole.RIDER: {
        CancelReasonCategory.DELIVERY_ISSUE,
        CancelReasonCategory.OTHER,
    },
    ActorRole.ADMIN: {
        CancelReasonCategory.CUSTOMER_DUPLICATE_ORDER,
        CancelReasonCategory.RESTAURANT_CLOSED,
        CancelReasonCategory.RESTAURANT_OUT_OF_STOCK,
        CancelReasonCategory.RESTAURANT_TOO_BUSY,
        CancelReasonCategory.DELIVERY_ISSUE,
        CancelReasonCategory.SYSTEM_ERROR,
        CancelReasonCategory.OTHER,
    },
    ActorRole.SYSTEM: {
        CancelReasonCategory.CUSTOMER_DUPLICATE_ORDER,
        CancelReasonCategory.RESTAURANT_CLOSED,
        CancelReasonCategory.DELIVERY_ISSUE,
        CancelReasonCategory.SYSTEM_ERROR,
        CancelReasonCategory.TIMEOUT,
    },
}

# Who gets notified when an order enters a status.
STATUS_NOTIFICATION_TARGETS: dict[str, tuple[str, ...]] = {
    OrderStatus.CONFIRMED: (ActorRole.CUSTOMER,),
    OrderStatus.PREPARING: (ActorRole.CUSTOMER,),
    OrderStatus.READY: (ActorRole.CUSTOMER, ActorRole.RIDER),
    OrderStatus.PICKED_UP: (ActorRole.CUSTOMER,),
    OrderStatus.DELIVERING: (ActorRole.CUSTOMER,),
    OrderStatus.DELIVERED: (ActorRole.CUSTOMER, ActorRole.OWNER),
    OrderStatus.CANCELLED: (ActorRole.CUSTOMER, ActorRole.OWNER, ActorRole.RIDER),
}

FULL_REFUND_RATE = Decimal("1")
REFUND_QUANTUM = Decimal("1")
DELIVERY_ALLOWANCE_MINUTES = 30
ORDER_NUMBER_MAX_RETRIES = 5
