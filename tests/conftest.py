from __future__ import annotations

from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

import pytest
from django.core.cache import cache
from rest_framework.test import APIClient

from modules.orders import services as order_services
from modules.orders.constants import ActorRole, OrderAction, OrderStatus
from modules.orders.dtos import ActorContext, AdvanceStatusDTO, PlaceOrderDTO
from modules.orders.gateways import (
    OUTCOME_COMPLETED,
    IRefundGateway,
    RefundGatewayError,
    RefundOutcome,
)
from modules.orders.services import OrderLifecycleService

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=dt_timezone.utc)


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture(autouse=True)
def _clear_cache():
    """Throttle counters live in the cache; start every test from zero."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture()
def api_client():
    """DRF APIClient for testing API endpoints."""
    return APIClient()


@pytest.fixture()
def api_client_with_correlation(api_client):
    """APIClient pre-configured with a known correlation ID header."""
    cid = "test-correlation-id-fixture"
    api_client.defaults["HTTP_X_REQUEST_ID"] = cid
    return api_client, cid


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Injectable clock; tests move it explicitly."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def at(self, minutes: float) -> datetime:
        """Jump to ``T0 + minutes``."""
        self.now = T0 + timedelta(minutes=minutes)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Refund gateway
# ---------------------------------------------------------------------------


class FakeRefundGateway(IRefundGateway):
    """Records calls and answers with the queued outcomes (default: completed)."""

    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.outcomes: List[object] = []

    def queue(self, *outcomes: object) -> None:
        self.outcomes.extend(outcomes)

    def refund(self, payment_id: str, amount: Decimal, idempotency_key: str) -> RefundOutcome:
        self.calls.append(
            {"payment_id": payment_id, "amount": amount, "idempotency_key": idempotency_key}
        )
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, RefundGatewayError):
            raise outcome
        if outcome is None:
            return RefundOutcome(OUTCOME_COMPLETED, gateway_ref=f"rf-{len(self.calls)}")
        return outcome


@pytest.fixture(autouse=True)
def refund_gateway(monkeypatch):
    """No test talks to a real payment processor."""
    gateway = FakeRefundGateway()
    monkeypatch.setattr(order_services, "build_refund_gateway", lambda: gateway)
    return gateway


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture()
def restaurant_id():
    return uuid4()


@pytest.fixture()
def customer():
    return ActorContext(role=ActorRole.CUSTOMER, actor_id=uuid4())


@pytest.fixture()
def owner(restaurant_id):
    return ActorContext(role=ActorRole.OWNER, actor_id=uuid4(), restaurant_id=restaurant_id)


@pytest.fixture()
def rider():
    return ActorContext(role=ActorRole.RIDER, actor_id=uuid4())


@pytest.fixture()
def admin():
    return ActorContext(role=ActorRole.ADMIN, actor_id=uuid4())


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.fixture()
def service(clock):
    return OrderLifecycleService(clock=clock)


@pytest.fixture()
def place_order(service, customer, restaurant_id):
    """Factory placing a 26500 order (24000 menu + 2500 delivery fee)."""

    def _place(
        menu_amount: str = "24000",
        delivery_fee: str = "2500",
        platform_fee: str = "0",
        discount_amount: str = "0",
        points_used: str = "0",
        coupon_id: Optional[str] = None,
        actor: Optional[ActorContext] = None,
    ):
        total = (
            Decimal(menu_amount)
            - Decimal(discount_amount)
            - Decimal(points_used)
            + Decimal(delivery_fee)
            + Decimal(platform_fee)
        )
        dto = PlaceOrderDTO(
            customer_id=(actor or customer).actor_id,
            restaurant_id=restaurant_id,
            payment_id=f"pay-{uuid4().hex[:12]}",
            menu_amount=Decimal(menu_amount),
            discount_amount=Decimal(discount_amount),
            points_used=Decimal(points_used),
            delivery_fee=Decimal(delivery_fee),
            platform_fee=Decimal(platform_fee),
            total_amount=total,
            coupon_id=coupon_id,
        )
        return service.place_order(dto)

    return _place


@pytest.fixture()
def drive(service, owner, rider):
    """Walk an order forward to ``status`` through the real action handlers."""
    steps = [
        (OrderStatus.CONFIRMED, owner, AdvanceStatusDTO(action=OrderAction.ACCEPT, start_preparing=False)),
        (OrderStatus.PREPARING, owner, AdvanceStatusDTO(action=OrderAction.START_PREPARING)),
        (OrderStatus.READY, owner, AdvanceStatusDTO(action=OrderAction.MARK_READY)),
        (OrderStatus.PICKED_UP, rider, AdvanceStatusDTO(action=OrderAction.PICK_UP)),
        (OrderStatus.DELIVERING, rider, AdvanceStatusDTO(action=OrderAction.START_DELIVERY)),
        (
            OrderStatus.DELIVERED,
            rider,
            AdvanceStatusDTO(action=OrderAction.COMPLETE_DELIVERY, delivery_proof="photo://door"),
        ),
    ]

    def _drive(order_id, status):
        for target, actor, dto in steps:
            service.advance_status(order_id, actor, dto)
            if target == status:
                return service.get_order(order_id)
        raise ValueError(f"Cannot drive an order to {status}.")

    return _drive
