"""Cancellation Eligibility Evaluator.

Pure function over ``(order snapshot, requester role, now, policy)``.
It never touches the database; the result tells the caller whether the
requester may cancel, at which refund rate and why not otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from modules.orders.constants import (
    FULL_REFUND_RATE,
    TERMINAL_STATES,
    ActorRole,
    OrderStatus,
)
from modules.orders.exceptions import (
    AlreadyTerminal,
    InvalidCancellationReason,
    NotEligibleForCancellation,
    OrderLifecycleError,
)

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.orders.policy import CancellationPolicy

ZERO_RATE = Decimal("0")

# Denial kinds
DENIED_TERMINAL = "already_terminal"
DENIED_POLICY = "not_eligible"
DENIED_MISSING_JUSTIFICATION = "justification_required"

_DENIAL_ERRORS: dict[str, type[OrderLifecycleError]] = {
    DENIED_TERMINAL: AlreadyTerminal,
    DENIED_POLICY: NotEligibleForCancellation,
    DENIED_MISSING_JUSTIFICATION: InvalidCancellationReason,
}


@dataclass(frozen=True)
class EligibilityResult:
    allowed: bool
    refund_rate: Decimal
    message: str
    denial: Optional[str] = None
    fees_refundable: bool = False

    def raise_for_denial(self) -> None:
        """Raise the matching lifecycle error when the request was denied."""
        if self.allowed:
            return
        error_class = _DENIAL_ERRORS.get(self.denial or "", NotEligibleForCancellation)
        raise error_class(self.message)


def _allow(rate: Decimal, message: str, fees_refundable: bool = False) -> EligibilityResult:
    return EligibilityResult(
        allowed=True,
        refund_rate=rate,
        message=message,
        fees_refundable=fees_refundable,
    )


def _deny(message: str, denial: str = DENIED_POLICY) -> EligibilityResult:
    return EligibilityResult(
        allowed=False, refund_rate=ZERO_RATE, message=message, denial=denial
    )


def evaluate_cancellation(
    order: Order,
    role: str,
    now: datetime,
    policy: CancellationPolicy,
    *,
    admin_refund_rate: Optional[Decimal] = None,
    reason_detail: str = "",
    fees_refundable: bool = False,
    require_justification: bool = True,
) -> EligibilityResult:
    """Decide whether ``role`` may cancel ``order`` at ``now``.

    ``require_justification=False`` lets read-only previews evaluate an
    admin override before the admin has written the reason.
    """
    status = order.status

    if status in TERMINAL_STATES:
        return _deny(f"Order is already {status}.", DENIED_TERMINAL)

    if role == ActorRole.ADMIN:
        return _evaluate_admin(
            order,
            now,
            policy,
            admin_refund_rate,
            reason_detail,
            fees_refundable,
            require_justification,
        )
    if role == ActorRole.CUSTOMER:
        return _evaluate_customer(order, now, policy)
    if role == ActorRole.OWNER:
        if status == OrderStatus.PENDING:
            return _allow(FULL_REFUND_RATE, "Restaurant declined the order; full refund.")
        return _deny(
            "Restaurants can only decline orders that have not been accepted yet."
        )
    if role == ActorRole.SYSTEM:
        if status == OrderStatus.PENDING:
            return _allow(FULL_REFUND_RATE, "Restaurant did not respond in time; full refund.")
        return _deny("Automatic cancellation only applies to pending orders.")

    return _deny("Riders cannot cancel orders. Report a delivery issue instead.")


def _customer_rate(
    order: Order, now: datetime, policy: CancellationPolicy
) -> Optional[Decimal]:
    """Self-service refund rate for the order's status, ``None`` if not cancellable."""
    if order.status in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
        return FULL_REFUND_RATE
    if order.status == OrderStatus.PREPARING and order.confirmed_at is not None:
        if now - order.confirmed_at <= policy.preparing_grace:
            return policy.preparing_refund_rate
    return None


def _evaluate_customer(
    order: Order, now: datetime, policy: CancellationPolicy
) -> EligibilityResult:
    rate = _customer_rate(order, now, policy)
    if rate is not None:
        if rate == FULL_REFUND_RATE:
            return _allow(rate, "The order can be cancelled with a full refund.")
        return _allow(
            rate,
            f"Cooking has started; {rate * 100:.0f}% of the payment will be refunded.",
        )
    if order.status == OrderStatus.PREPARING:
        return _deny(
            "The cancellation window for orders being prepared has passed. "
            "Please open a dispute with customer support."
        )
    return _deny(
        f"Orders that are {order.status} cannot be cancelled. "
        "Please contact customer support."
    )


def _evaluate_admin(
    order: Order,
    now: datetime,
    policy: CancellationPolicy,
    admin_refund_rate: Optional[Decimal],
    reason_detail: str,
    fees_refundable: bool,
    require_justification: bool,
) -> EligibilityResult:
    if require_justification and not reason_detail.strip():
        return _deny(
            "Admin overrides must be justified with a reason detail.",
            DENIED_MISSING_JUSTIFICATION,
        )
    rate = admin_refund_rate
    if rate is None:
        rate = _customer_rate(order, now, policy)
    if rate is None:
        return _deny(
            f"A refund rate must be supplied to cancel an order that is {order.status}."
        )
    if not ZERO_RATE <= rate <= FULL_REFUND_RATE:
        return _deny("Refund rate must be between 0 and 1.")
    return _allow(
        rate, "Admin override accepted.", fees_refundable=fees_refundable
    )
