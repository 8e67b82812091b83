"""Unit tests for domain event primitives and the outbox registry."""

from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from modules.orders.events import OrderCancelled, OrderStatusChanged
from shared.domain.events import DomainEventMixin, event_from_payload

pytestmark = pytest.mark.unit


class TestDomainEvent:
    def test_event_name_is_class_name(self):
        event = OrderStatusChanged(
            aggregate_id=uuid4(), from_status="pending", to_status="confirmed",
            actor_role="owner", version=2,
        )
        assert event.event_name == "OrderStatusChanged"

    def test_payload_is_json_safe(self):
        order_id = uuid4()
        event = OrderCancelled(
            aggregate_id=order_id,
            cancellation_id=uuid4(),
            cancelled_by="customer",
            reason="customer_change_mind",
            refund_amount=Decimal("26500.00"),
        )
        payload = event.to_payload()
        assert payload["aggregate_id"] == str(order_id)
        assert payload["refund_amount"] == "26500.00"
        assert isinstance(payload["occurred_on"], str)


class TestRegistry:
    def test_rebuilds_typed_fields(self):
        original = OrderCancelled(
            aggregate_id=uuid4(),
            cancellation_id=uuid4(),
            cancelled_by="admin",
            reason="system_error",
            refund_amount=Decimal("13250"),
            is_admin_override=True,
        )
        rebuilt = event_from_payload("OrderCancelled", original.to_payload())
        assert isinstance(rebuilt, OrderCancelled)
        assert isinstance(rebuilt.cancellation_id, UUID)
        assert rebuilt.refund_amount == Decimal("13250")
        assert rebuilt.event_id == original.event_id
        assert rebuilt.occurred_on == original.occurred_on

    def test_optional_none_survives(self):
        event = OrderStatusChanged(
            aggregate_id=uuid4(), from_status=None, to_status="pending",
            actor_role="customer", version=1,
        )
        rebuilt = event_from_payload("OrderStatusChanged", event.to_payload())
        assert rebuilt.from_status is None

    def test_unknown_type_raises_key_error(self):
        with pytest.raises(KeyError):
            event_from_payload("OrderTeleported", {"aggregate_id": str(uuid4())})


class TestDomainEventMixin:
    def test_collects_and_clears(self):
        aggregate = DomainEventMixin()
        event = OrderStatusChanged(
            aggregate_id=uuid4(), from_status="pending", to_status="confirmed",
            actor_role="owner", version=2,
        )
        aggregate.add_domain_event(event)
        assert aggregate.domain_events == [event]
        aggregate.clear_domain_events()
        assert aggregate.domain_events == []
