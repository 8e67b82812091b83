"""Integration tests for the outbox relay task and the event handlers."""

import logging

import pytest

from modules.core import tasks as core_tasks
from modules.core.models import EventStatus, OutboxEvent
from modules.core.tasks import relay_outbox_events
from modules.orders.constants import CancelReasonCategory
from modules.orders.dtos import CancellationRequestDTO
from modules.orders import events as order_events
from modules.orders.events import OrderCancelled, OrderStatusChanged
from shared.domain.events import DomainEvent
from shared.infrastructure.bus import InMemoryEventBus

pytestmark = pytest.mark.integration


class Recorder:
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)


class Exploding:
    def handle(self, event):
        raise RuntimeError("notification service down")


@pytest.fixture()
def bus(monkeypatch):
    fresh = InMemoryEventBus()
    monkeypatch.setattr(core_tasks, "event_bus", fresh)
    return fresh


class TestRelay:
    def test_publishes_in_creation_order_and_marks_rows(self, bus, place_order, customer, service):
        recorder = Recorder()
        bus.subscribe(OrderStatusChanged, recorder)
        bus.subscribe(OrderCancelled, recorder)
        order = place_order()
        service.request_cancellation(
            order.id,
            customer,
            CancellationRequestDTO(reason_category=CancelReasonCategory.CUSTOMER_CHANGE_MIND),
        )

        result = relay_outbox_events.delay().get()

        assert result == {"published": 3, "failed": 0}
        assert [type(event).__name__ for event in recorder.events] == [
            "OrderStatusChanged",
            "OrderStatusChanged",
            "OrderCancelled",
        ]
        assert recorder.events[-1].aggregate_id == order.id
        assert not OutboxEvent.objects.exclude(status=EventStatus.PUBLISHED).exists()

    def test_handler_failure_marks_row_failed(self, bus, place_order):
        bus.subscribe(OrderStatusChanged, Exploding())
        place_order()

        result = relay_outbox_events()

        assert result == {"published": 0, "failed": 1}
        row = OutboxEvent.objects.get()
        assert row.status == EventStatus.FAILED
        assert row.retry_count == 1
        assert "notification service down" in row.error_message

    def test_failed_rows_are_retried_until_the_limit(self, bus, place_order, settings):
        settings.OUTBOX_MAX_RETRIES = 2
        bus.subscribe(OrderStatusChanged, Exploding())
        place_order()

        relay_outbox_events()
        relay_outbox_events()
        assert relay_outbox_events() == {"published": 0, "failed": 0}
        assert OutboxEvent.objects.get().retry_count == 2

    def test_unknown_event_type_is_recorded_as_failure(self, bus):
        OutboxEvent.objects.create(
            event_type="OrderTeleported", aggregate_id="x", topic="orders", payload={}
        )
        assert relay_outbox_events() == {"published": 0, "failed": 1}

    def test_batch_size(self, bus, place_order):
        place_order()
        place_order()
        assert relay_outbox_events(batch_size=1) == {"published": 1, "failed": 0}


class TestRegisteredHandlers:
    def test_terminal_status_reaches_settlement_and_notifications(
        self, place_order, customer, service, caplog
    ):
        order = place_order()
        service.request_cancellation(
            order.id,
            customer,
            CancellationRequestDTO(reason_category=CancelReasonCategory.CUSTOMER_CHANGE_MIND),
        )
        with caplog.at_level(logging.INFO):
            relay_outbox_events()

        messages = [record.getMessage() for record in caplog.records]
        assert any("settlement.order_closed" in message for message in messages)
        assert any("settlement.cancellation_recorded" in message for message in messages)
        assert any("notification.requested" in message for message in messages)

    def test_loyalty_restoration_reaches_the_loyalty_handlers(
        self, place_order, customer, service, caplog
    ):
        order = place_order(points_used="1000", coupon_id="CPN-1")
        result = service.request_cancellation(
            order.id,
            customer,
            CancellationRequestDTO(reason_category=CancelReasonCategory.CUSTOMER_CHANGE_MIND),
        )
        with caplog.at_level(logging.INFO):
            relay_outbox_events()

        messages = [record.getMessage() for record in caplog.records]
        points = [m for m in messages if "loyalty.points_restore_requested" in m]
        coupons = [m for m in messages if "loyalty.coupon_restore_requested" in m]
        assert len(points) == 1 and "1000" in points[0]
        assert str(result.cancellation_id) in points[0]
        assert len(coupons) == 1 and "CPN-1" in coupons[0]
        assert not OutboxEvent.objects.filter(topic="loyalty").exclude(
            status=EventStatus.PUBLISHED
        ).exists()

    def test_every_order_event_has_a_subscriber(self):
        from shared.infrastructure.bus import event_bus

        event_classes = [
            value
            for value in vars(order_events).values()
            if isinstance(value, type)
            and issubclass(value, DomainEvent)
            and value is not DomainEvent
        ]
        assert event_classes
        assert [cls.__name__ for cls in event_classes if not event_bus.handlers_for(cls)] == []
