"""Event Emitter.

Turns the domain events collected on an ``Order`` aggregate into
``OutboxEvent`` rows.  Must be called inside the transaction that
committed the order write; the relay task publishes them afterwards.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List

import structlog
from django.db import DatabaseError

from modules.core.models import OutboxEvent
from modules.orders.events import CouponRestoreRequested, PointsRestoreRequested
from modules.orders.exceptions import PersistenceFailure

if TYPE_CHECKING:
    from shared.domain.events import DomainEvent, DomainEventMixin

logger = structlog.get_logger(__name__)

ORDERS_TOPIC = "orders"
LOYALTY_TOPIC = "loyalty"

_LOYALTY_EVENTS = (PointsRestoreRequested, CouponRestoreRequested)


def topic_for(event: DomainEvent) -> str:
    return LOYALTY_TOPIC if isinstance(event, _LOYALTY_EVENTS) else ORDERS_TOPIC


class OrderEventEmitter:
    """Writes pending aggregate events to the transactional outbox."""

    def emit(self, event: DomainEvent) -> OutboxEvent:
        try:
            outbox = OutboxEvent.objects.create(
                event_type=event.event_name,
                aggregate_id=str(event.aggregate_id),
                payload=event.to_payload(),
                topic=topic_for(event),
            )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Could not record {event.event_name} for {event.aggregate_id}: {exc}"
            ) from exc
        logger.info(
            "order.event.recorded",
            event_name=event.event_name,
            aggregate_id=str(event.aggregate_id),
            outbox_id=str(outbox.id),
        )
        return outbox

    def flush(self, aggregate: DomainEventMixin) -> List[OutboxEvent]:
        """Persist and clear every event the aggregate collected."""
        rows = [self.emit(event) for event in aggregate.domain_events]
        aggregate.clear_domain_events()
        return rows
