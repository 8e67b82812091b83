"""Unit tests for the refund policy calculator."""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from modules.orders.constants import OrderStatus
from modules.orders.models import Order
from modules.orders.policy import CancellationPolicy
from modules.orders.refunds import calculate_refund

pytestmark = pytest.mark.unit

POLICY = CancellationPolicy()


def _order(status=OrderStatus.PENDING, **amounts) -> Order:
    values = {
        "menu_amount": Decimal("24000"),
        "delivery_fee": Decimal("2500"),
        "platform_fee": Decimal("0"),
        "points_used": Decimal("0"),
        "total_amount": Decimal("26500"),
    }
    values.update(amounts)
    return Order(customer_id=uuid4(), restaurant_id=uuid4(), status=status, **values)


def test_full_rate_refunds_everything():
    quote = calculate_refund(_order(), Decimal("1"), POLICY)
    assert quote.refund_amount == Decimal("26500")
    assert quote.fees_withheld == Decimal("0")


def test_half_rate_while_preparing():
    quote = calculate_refund(_order(OrderStatus.PREPARING), Decimal("0.5"), POLICY)
    assert quote.refund_amount == Decimal("13250")


def test_rounds_half_up_to_whole_currency_units():
    order = _order(menu_amount=Decimal("2001"), delivery_fee=Decimal("0"), total_amount=Decimal("2001"))
    quote = calculate_refund(order, Decimal("0.5"), POLICY)
    assert quote.refund_amount == Decimal("1001")


def test_fees_withheld_after_pickup():
    order = _order(OrderStatus.PICKED_UP, platform_fee=Decimal("500"), total_amount=Decimal("27000"))
    quote = calculate_refund(order, Decimal("1"), POLICY)
    assert quote.fees_withheld == Decimal("3000")
    assert quote.refund_amount == Decimal("24000")


def test_fees_refunded_when_admin_marks_them_refundable():
    quote = calculate_refund(
        _order(OrderStatus.DELIVERING), Decimal("1"), POLICY, fees_refundable=True
    )
    assert quote.refund_amount == Decimal("26500")


def test_zero_rate_refunds_nothing_and_keeps_loyalty():
    order = _order(points_used=Decimal("1000"), total_amount=Decimal("25500"), coupon_id="CPN-1")
    quote = calculate_refund(order, Decimal("0"), POLICY)
    assert quote.refund_amount == Decimal("0")
    assert not quote.restores_loyalty


def test_refund_never_exceeds_total_paid():
    quote = calculate_refund(_order(), Decimal("1"), POLICY)
    assert quote.refund_amount <= quote.total_paid


def test_full_rate_restores_points_and_coupon():
    order = _order(points_used=Decimal("1000"), total_amount=Decimal("25500"), coupon_id="CPN-1")
    quote = calculate_refund(order, Decimal("1"), POLICY)
    assert quote.restore_points == Decimal("1000")
    assert quote.restore_coupon_id == "CPN-1"


def test_partial_rate_restores_loyalty_only_when_policy_allows():
    order = _order(
        OrderStatus.PREPARING, points_used=Decimal("1000"), total_amount=Decimal("25500")
    )
    assert not calculate_refund(order, Decimal("0.5"), POLICY).restores_loyalty

    generous = CancellationPolicy(restore_loyalty_on_partial=True)
    assert calculate_refund(order, Decimal("0.5"), generous).restore_points == Decimal("1000")
