"""Django ORM implementation of the Order repository.

Satisfies ``IOrderRepository`` using Django's QuerySet API.

Concurrency control is optimistic: every status write is a single
``UPDATE ... WHERE id = %s AND version = %s`` that bumps the version.
Zero matched rows means another writer got there first and the caller
receives ``VersionConflict``.  No row locks are held between the read
and the write, so unrelated orders never wait on each other.

Database errors are surfaced as ``PersistenceFailure``; callers run
inside ``transaction.atomic()`` so nothing partial is committed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F, QuerySet
from django.utils import timezone

from modules.orders.constants import (
    PHASE_TIMESTAMP_FIELDS,
    TERMINAL_STATES,
    CancelStatus,
    OrderStatus,
    RefundStatus,
)
from modules.orders.dtos import ActorContext, PlaceOrderDTO
from modules.orders.exceptions import (
    CancellationNotFound,
    ConcurrentModification,
    OrderNotFound,
    PersistenceFailure,
    VersionConflict,
)
from modules.orders.models import CancellationRecord, Order, OrderStatusHistory
from modules.orders.repositories.interfaces import IOrderRepository

logger = structlog.get_logger(__name__)


class OrderDjangoRepository(IOrderRepository):
    """Concrete Order repository backed by Django ORM."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    @transaction.atomic
    def create(self, dto: PlaceOrderDTO, now: Optional[datetime] = None) -> Order:
        """Persist a placed order at version 1 and record its first history row."""
        order = Order(
            created_at=now or timezone.now(),
            customer_id=dto.customer_id,
            restaurant_id=dto.restaurant_id,
            payment_id=dto.payment_id,
            menu_amount=dto.menu_amount,
            discount_amount=dto.discount_amount,
            points_used=dto.points_used,
            delivery_fee=dto.delivery_fee,
            platform_fee=dto.platform_fee,
            total_amount=dto.total_amount,
            coupon_id=dto.coupon_id,
        )
        try:
            order.save()
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not persist order: {exc}") from exc

        self.add_history(
            order_id=order.id,
            old_status=None,
            new_status=OrderStatus.PENDING,
            version=order.version,
            actor=ActorContext(role="customer", actor_id=dto.customer_id),
            notes="Order placed",
        )
        logger.info("order.persisted", order_id=str(order.id), total=str(order.total_amount))
        return order

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order; ``None`` for non-existent or invalid IDs."""
        try:
            return Order.objects.filter(id=id).first()
        except (ValueError, ValidationError):
            return None
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not load order {id}: {exc}") from exc

    def get_order(self, id: UUID | str) -> Order:
        order = self.get_by_id(str(id))
        if order is None:
            raise OrderNotFound(f"Order {id} not found.")
        return order

    def list_terminal(self) -> QuerySet:
        return Order.objects.filter(status__in=TERMINAL_STATES)

    def pending_older_than(self, cutoff: datetime) -> List[UUID]:
        return list(
            Order.objects.filter(status=OrderStatus.PENDING, created_at__lte=cutoff)
            .order_by("created_at")
            .values_list("id", flat=True)
        )

    def refunds_awaiting_dispatch(self, cutoff: datetime) -> List[UUID]:
        return list(
            CancellationRecord.objects.filter(
                cancel_status=CancelStatus.APPROVED,
                refund_status=RefundStatus.PENDING,
                created_at__lte=cutoff,
            )
            .order_by("created_at")
            .values_list("id", flat=True)
        )

    # ------------------------------------------------------------------
    # Versioned write
    # ------------------------------------------------------------------

    def write_transition(
        self,
        order: Order,
        new_status: str,
        actor: ActorContext,
        changes: Optional[Dict[str, Any]] = None,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Order:
        now = now or timezone.now()
        values: Dict[str, Any] = dict(changes or {})
        values.update(status=new_status, version=F("version") + 1, updated_at=now)

        # Phase timestamps are write-once.  The version guard below makes
        # the snapshot's NULL check authoritative.
        stamp = PHASE_TIMESTAMP_FIELDS.get(new_status)
        if stamp and getattr(order, stamp) is None:
            values[stamp] = now

        try:
            updated = Order.objects.filter(pk=order.pk, version=order.version).update(
                **values
            )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Could not write transition for order {order.pk}: {exc}"
            ) from exc

        if updated == 0:
            logger.info(
                "order.version_conflict",
                order_id=str(order.pk),
                expected_version=order.version,
                new_status=new_status,
            )
            raise VersionConflict(order.pk, order.version)

        self.add_history(
            order_id=order.pk,
            old_status=order.status,
            new_status=new_status,
            version=order.version + 1,
            actor=actor,
            notes=notes,
        )
        return self.get_order(order.pk)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def add_history(
        self,
        order_id: UUID,
        old_status: Optional[str],
        new_status: str,
        version: int,
        actor: ActorContext,
        notes: str = "",
    ) -> OrderStatusHistory:
        try:
            history = OrderStatusHistory.objects.create(
                order_id=order_id,
                old_status=old_status,
                new_status=new_status,
                version=version,
                actor_role=actor.role,
                actor_id=actor.actor_id,
                notes=notes,
            )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Could not record history for order {order_id}: {exc}"
            ) from exc

        logger.info(
            "order.history_added",
            order_id=str(order_id),
            old_status=old_status,
            new_status=new_status,
            version=version,
        )
        return history

    # ------------------------------------------------------------------
    # Cancellation records
    # ------------------------------------------------------------------

    def insert_cancellation(self, record: CancellationRecord) -> CancellationRecord:
        try:
            # Savepoint: a constraint violation must not poison the outer transaction.
            with transaction.atomic():
                record.save(force_insert=True)
        except IntegrityError as exc:
            raise ConcurrentModification(
                f"Order {record.order_id} already has a live cancellation."
            ) from exc
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not record cancellation: {exc}") from exc

        logger.info(
            "cancellation.recorded",
            cancellation_id=str(record.id),
            order_id=str(record.order_id),
            cancel_status=record.cancel_status,
            refund_status=record.refund_status,
        )
        return record

    def update_cancellation(
        self,
        id: UUID,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        values = dict(fields)
        values["updated_at"] = timezone.now()
        try:
            updated = CancellationRecord.objects.filter(pk=id, **(expected or {})).update(
                **values
            )
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not update cancellation {id}: {exc}") from exc
        return updated == 1

    def get_cancellation(self, id: UUID | str) -> CancellationRecord:
        try:
            record = (
                CancellationRecord.objects.select_related("order").filter(pk=id).first()
            )
        except (ValueError, ValidationError):
            record = None
        except DatabaseError as exc:
            raise PersistenceFailure(f"Could not load cancellation {id}: {exc}") from exc
        if record is None:
            raise CancellationNotFound(f"Cancellation {id} not found.")
        return record
