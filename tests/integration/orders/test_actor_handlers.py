"""Integration tests for the owner / rider / system action handlers."""

from datetime import timedelta
from uuid import uuid4

import pytest

from modules.core.models import OutboxEvent
from modules.orders.constants import ActorRole, CancelReasonCategory, OrderAction, OrderStatus
from modules.orders.dtos import ActorContext, AdvanceStatusDTO, CancellationRequestDTO
from modules.orders.exceptions import (
    AlreadyTerminal,
    InvalidTransition,
    OrderAccessDenied,
    OrderNotFound,
)
from modules.orders.models import OrderStatusHistory

pytestmark = pytest.mark.integration


class TestPlaceOrder:
    def test_persists_pending_order_with_first_history_row(self, place_order, clock):
        order = place_order()
        assert order.status == OrderStatus.PENDING
        assert order.version == 1
        assert order.created_at == clock.now

        history = list(order.status_history.all())
        assert len(history) == 1
        assert history[0].old_status is None
        assert history[0].new_status == OrderStatus.PENDING

    def test_records_status_event_in_outbox(self, place_order):
        order = place_order()
        rows = OutboxEvent.objects.filter(aggregate_id=str(order.id))
        assert [row.event_type for row in rows] == ["OrderStatusChanged"]
        assert rows[0].payload["to_status"] == OrderStatus.PENDING


class TestOwnerActions:
    def test_accept_confirms_and_starts_preparing_atomically(
        self, service, place_order, owner, clock
    ):
        order = place_order()
        clock.at(1)
        result = service.advance_status(
            order.id, owner, AdvanceStatusDTO(action=OrderAction.ACCEPT, estimated_prep_minutes=20)
        )
        assert result.new_status == OrderStatus.PREPARING
        assert result.version == 3

        order.refresh_from_db()
        assert order.confirmed_at == clock.now
        assert order.estimated_prep_minutes == 20
        assert order.estimated_delivery_at == clock.now + timedelta(minutes=50)
        assert [h.new_status for h in order.status_history.all()] == [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
        ]

    def test_accept_without_cooking(self, service, place_order, owner):
        order = place_order()
        result = service.advance_status(
            order.id, owner, AdvanceStatusDTO(action=OrderAction.ACCEPT, start_preparing=False)
        )
        assert result.new_status == OrderStatus.CONFIRMED
        assert result.version == 2

    def test_other_restaurant_is_denied(self, service, place_order):
        order = place_order()
        stranger = ActorContext(role=ActorRole.OWNER, actor_id=uuid4(), restaurant_id=uuid4())
        with pytest.raises(OrderAccessDenied):
            service.advance_status(order.id, stranger, AdvanceStatusDTO(action=OrderAction.ACCEPT))

    def test_cannot_skip_to_ready(self, service, place_order, owner):
        order = place_order()
        with pytest.raises(InvalidTransition):
            service.advance_status(order.id, owner, AdvanceStatusDTO(action=OrderAction.MARK_READY))
        order.refresh_from_db()
        assert order.version == 1

    def test_reject_goes_through_cancellation_path(self, service, place_order, owner):
        order = place_order()
        result = service.advance_status(
            order.id, owner, AdvanceStatusDTO(action=OrderAction.REJECT, reason="Out of rice")
        )
        assert result.new_status == OrderStatus.CANCELLED

        order.refresh_from_db()
        assert order.cancelled_by == ActorRole.OWNER
        assert order.cancelled_reason == "owner_rejected"
        assert order.rejection_reason == "Out of rice"
        record = order.cancellations.get()
        assert record.refund_amount == order.total_amount

    def test_cancel_action_is_not_an_advance(self, service, place_order, owner):
        order = place_order()
        with pytest.raises(InvalidTransition):
            service.advance_status(order.id, owner, AdvanceStatusDTO(action=OrderAction.CANCEL))

    def test_unknown_order(self, service, owner):
        with pytest.raises(OrderNotFound):
            service.advance_status(uuid4(), owner, AdvanceStatusDTO(action=OrderAction.ACCEPT))


class TestRiderActions:
    def test_accept_delivery_assigns_without_status_change(
        self, service, place_order, drive, rider
    ):
        order = place_order()
        drive(order.id, OrderStatus.PREPARING)
        result = service.advance_status(
            order.id, rider, AdvanceStatusDTO(action=OrderAction.ACCEPT_DELIVERY)
        )
        assert result.new_status == OrderStatus.PREPARING
        assert result.version == 4

        order.refresh_from_db()
        assert order.rider_id == rider.actor_id
        last = order.status_history.last()
        assert last.old_status == last.new_status == OrderStatus.PREPARING

    def test_accept_delivery_twice_is_a_no_op(self, service, place_order, rider):
        order = place_order()
        dto = AdvanceStatusDTO(action=OrderAction.ACCEPT_DELIVERY)
        service.advance_status(order.id, rider, dto)
        result = service.advance_status(order.id, rider, dto)
        assert result.version == 2

    def test_pick_up_assigns_unassigned_rider(self, service, place_order, drive, rider, clock):
        order = place_order()
        drive(order.id, OrderStatus.READY)
        clock.at(25)
        service.advance_status(order.id, rider, AdvanceStatusDTO(action=OrderAction.PICK_UP))
        order.refresh_from_db()
        assert order.status == OrderStatus.PICKED_UP
        assert order.rider_id == rider.actor_id
        assert order.picked_up_at == clock.now

    def test_other_rider_cannot_pick_up_assigned_order(self, service, place_order, drive, rider):
        order = place_order()
        service.advance_status(order.id, rider, AdvanceStatusDTO(action=OrderAction.ACCEPT_DELIVERY))
        drive(order.id, OrderStatus.READY)
        other = ActorContext(role=ActorRole.RIDER, actor_id=uuid4())
        with pytest.raises(OrderAccessDenied):
            service.advance_status(order.id, other, AdvanceStatusDTO(action=OrderAction.PICK_UP))

    def test_complete_requires_delivery_proof(self, service, place_order, drive, rider):
        order = place_order()
        drive(order.id, OrderStatus.DELIVERING)
        with pytest.raises(InvalidTransition):
            service.advance_status(
                order.id, rider, AdvanceStatusDTO(action=OrderAction.COMPLETE_DELIVERY)
            )

    def test_complete_stores_proof(self, service, place_order, drive):
        order = place_order()
        delivered = drive(order.id, OrderStatus.DELIVERED)
        assert delivered.delivery_proof == "photo://door"
        assert delivered.delivered_at is not None

    def test_cannot_assign_after_pickup(self, service, place_order, drive):
        order = place_order()
        drive(order.id, OrderStatus.PICKED_UP)
        other = ActorContext(role=ActorRole.RIDER, actor_id=uuid4())
        with pytest.raises(OrderAccessDenied):
            service.advance_status(
                order.id, other, AdvanceStatusDTO(action=OrderAction.ACCEPT_DELIVERY)
            )

    def test_delivered_order_rejects_further_actions(self, service, place_order, drive, rider):
        order = place_order()
        drive(order.id, OrderStatus.DELIVERED)
        with pytest.raises(AlreadyTerminal):
            service.advance_status(
                order.id, rider, AdvanceStatusDTO(action=OrderAction.START_DELIVERY)
            )


class TestSystemActions:
    def test_system_can_start_preparing(self, service, place_order, owner):
        order = place_order()
        service.advance_status(
            order.id, owner, AdvanceStatusDTO(action=OrderAction.ACCEPT, start_preparing=False)
        )
        result = service.advance_status(
            order.id, ActorContext.system(), AdvanceStatusDTO(action=OrderAction.START_PREPARING)
        )
        assert result.new_status == OrderStatus.PREPARING
        history = OrderStatusHistory.objects.filter(order_id=order.id).last()
        assert history.actor_role == ActorRole.SYSTEM
        assert history.actor_id is None

    def test_customers_only_cancel(self, service, place_order, customer):
        order = place_order()
        with pytest.raises(InvalidTransition):
            service.advance_status(order.id, customer, AdvanceStatusDTO(action=OrderAction.ACCEPT))


class TestQueries:
    def test_customer_reads_own_order_only(self, service, place_order, customer):
        order = place_order()
        assert service.get_order_for(order.id, customer).id == order.id
        other = ActorContext(role=ActorRole.CUSTOMER, actor_id=uuid4())
        with pytest.raises(OrderAccessDenied):
            service.get_order_for(order.id, other)

    def test_rider_reads_unassigned_order(self, service, place_order, rider):
        order = place_order()
        assert service.get_order_for(order.id, rider).id == order.id

    def test_settlement_listing_only_has_terminal_orders(
        self, service, place_order, drive, customer
    ):
        open_order = place_order()
        delivered = place_order()
        cancelled = place_order()
        drive(delivered.id, OrderStatus.DELIVERED)
        service.request_cancellation(
            cancelled.id,
            customer,
            CancellationRequestDTO(reason_category=CancelReasonCategory.CUSTOMER_CHANGE_MIND),
        )
        ids = set(service.list_settlement_orders().values_list("id", flat=True))
        assert ids == {delivered.id, cancelled.id}
        assert open_order.id not in ids
