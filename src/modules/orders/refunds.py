"""Refund Policy Calculator.

Pure function over the order's monetary breakdown and a refund rate.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from modules.orders.constants import FULL_REFUND_RATE, REFUND_QUANTUM

if TYPE_CHECKING:
    from modules.orders.models import Order
    from modules.orders.policy import CancellationPolicy

ZERO = Decimal("0")


@dataclass(frozen=True)
class RefundQuote:
    total_paid: Decimal
    refundable_base: Decimal
    refund_rate: Decimal
    refund_amount: Decimal
    fees_withheld: Decimal
    restore_points: Decimal
    restore_coupon_id: str | None

    @property
    def restores_loyalty(self) -> bool:
        return self.restore_points > 0 or self.restore_coupon_id is not None


def calculate_refund(
    order: Order,
    refund_rate: Decimal,
    policy: CancellationPolicy,
    *,
    fees_refundable: bool = False,
) -> RefundQuote:
    """Compute the refund for cancelling ``order`` at ``refund_rate``.

    Delivery and platform fees are withheld once they have been earned
    (``picked_up`` or later) unless an admin marked them refundable.
    Points and coupons are consumed; they are only handed back on a
    full-rate cancellation, or on a partial one when the policy says so.
    """
    total_paid = Decimal(order.total_amount)
    fees_withheld = ZERO
    if order.fees_rendered and not fees_refundable:
        fees_withheld = Decimal(order.delivery_fee) + Decimal(order.platform_fee)

    base = max(total_paid - fees_withheld, ZERO)
    raw = (base * refund_rate).quantize(REFUND_QUANTUM, rounding=ROUND_HALF_UP)
    amount = min(max(raw, ZERO), total_paid)

    restore = refund_rate == FULL_REFUND_RATE or (
        refund_rate > ZERO and policy.restore_loyalty_on_partial
    )
    return RefundQuote(
        total_paid=total_paid,
        refundable_base=base,
        refund_rate=refund_rate,
        refund_amount=amount,
        fees_withheld=fees_withheld,
        restore_points=Decimal(order.points_used) if restore else ZERO,
        restore_coupon_id=order.coupon_id if restore and order.coupon_id else None,
    )
