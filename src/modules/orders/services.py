"""Order lifecycle service layer (Use Cases).

Orchestrates the four actor roles acting concurrently on shared orders.
Every write is a compare-and-swap on the order version and runs inside
``transaction.atomic()``; the service defines the unit-of-work boundary.

Business rules enforced:
- Status moves only along the transition table, for the roles listed on
  each edge (``transitions.validate_transition``).
- Cancellation eligibility and refund rate come from the pure evaluator
  and calculator; the result is recorded in a ``CancellationRecord``
  committed together with the order's move to ``cancelled``.
- A version conflict reloads the order once.  If the status moved, the
  request was a stale intent and fails; otherwise it is retried once and
  a second conflict surfaces ``ConcurrentModification``.
- Refunds are dispatched after commit and never block the handler.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

import structlog
from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from modules.orders.constants import (
    ASSIGNMENT_ACTION_STATES,
    CANCEL_REASONS_BY_ROLE,
    DELIVERY_ALLOWANCE_MINUTES,
    ActorRole,
    CancelReasonCategory,
    CancelStatus,
    OrderAction,
    OrderStatus,
    RefundStatus,
)
from modules.orders.dtos import (
    ActorContext,
    AdvanceStatusDTO,
    AdvanceStatusResultDTO,
    CancelabilityDTO,
    CancellationRequestDTO,
    CancellationResultDTO,
    PlaceOrderDTO,
)
from modules.orders.eligibility import evaluate_cancellation
from modules.orders.emitter import OrderEventEmitter
from modules.orders.events import (
    CancellationCompleted,
    OrderCancelled,
    OrderStatusChanged,
    RefundFailed,
)
from modules.orders.exceptions import (
    AlreadyTerminal,
    ConcurrentModification,
    InvalidCancellationReason,
    InvalidTransition,
    OrderAccessDenied,
    OrderLifecycleError,
    VersionConflict,
)
from modules.orders.gateways import (
    OUTCOME_ACCEPTED,
    OUTCOME_COMPLETED,
    ILoyaltyGateway,
    IRefundGateway,
    OutboxLoyaltyGateway,
    build_refund_gateway,
)
from modules.orders.models import CancellationRecord
from modules.orders.policy import CancellationPolicy
from modules.orders.refunds import calculate_refund
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.transitions import validate_transition

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository

logger = structlog.get_logger(__name__)

R = TypeVar("R")


def _dispatch_refund(cancellation_id: UUID, claimed: bool = False) -> bool:
    """Queue ``process_refund`` for a committed cancellation.

    Runs after commit, so a broker outage must not surface to the caller
    whose transaction already succeeded.  Unclaimed records stay
    ``pending`` and are picked up by ``dispatch_pending_refunds``.
    """
    from modules.orders.tasks import process_refund

    try:
        if claimed:
            process_refund.delay(str(cancellation_id), claimed=True)
        else:
            process_refund.delay(str(cancellation_id))
    except Exception:  # noqa: BLE001 - any broker error leaves the record for the sweep
        logger.exception("refund.dispatch_failed", cancellation_id=str(cancellation_id))
        return False
    logger.info("refund.dispatched", cancellation_id=str(cancellation_id), claimed=claimed)
    return True


# ---------------------------------------------------------------------------
# Actor Action Handlers
# ---------------------------------------------------------------------------


class BaseActionHandler:
    """Shared load → validate → versioned write → emit pipeline.

    Subclasses declare the role they serve and the non-cancellation
    actions they expose in ``actions``.
    """

    role: str = ""
    actions: Dict[str, str] = {}

    def __init__(
        self,
        repository: IOrderRepository,
        emitter: OrderEventEmitter,
        loyalty: ILoyaltyGateway,
        clock: Callable[[], datetime],
        policy: Optional[CancellationPolicy] = None,
    ) -> None:
        self._repo = repository
        self._emitter = emitter
        self._loyalty = loyalty
        self._clock = clock
        self._policy_override = policy

    @property
    def policy(self) -> CancellationPolicy:
        return self._policy_override or CancellationPolicy.from_settings()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def perform(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> Order:
        method_name = self.actions.get(dto.action)
        if method_name is None:
            raise InvalidTransition(
                f"Role '{actor.role}' may not perform '{dto.action}'."
            )
        return getattr(self, method_name)(order_id, actor, dto)

    def cancel(
        self,
        order_id: UUID,
        actor: ActorContext,
        request: CancellationRequestDTO,
        action: str = OrderAction.CANCEL,
        rejection_reason: str = "",
    ) -> tuple[Order, CancellationRecord]:
        attempted: List[CancellationRecord] = []

        def attempt(order: Order) -> tuple[Order, CancellationRecord]:
            return self._cancel_once(
                order, actor, request, action, rejection_reason, attempted
            )

        def on_stale(evaluated: Order, fresh: Order) -> None:
            if attempted:
                self._record_rejection(attempted[-1], fresh)

        return self._run(order_id, actor, action, attempt, on_stale)

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _run(
        self,
        order_id: UUID,
        actor: ActorContext,
        action: str,
        attempt: Callable[[Order], R],
        on_stale: Optional[Callable[[Order, Order], None]] = None,
    ) -> R:
        log = logger.bind(order_id=str(order_id), actor_role=actor.role, action=action)
        order = self._repo.get_order(order_id)
        try:
            with transaction.atomic():
                return attempt(order)
        except VersionConflict:
            log.info("order.version_conflict.reloading", expected_version=order.version)

        fresh = self._repo.get_order(order_id)
        if fresh.status != order.status:
            log.info(
                "order.stale_intent",
                evaluated_status=order.status,
                current_status=fresh.status,
            )
            if on_stale is not None:
                on_stale(order, fresh)
            if fresh.is_terminal:
                raise AlreadyTerminal(
                    f"Order became {fresh.status} while the request was processed."
                )
            raise InvalidTransition(
                f"Order moved from {order.status} to {fresh.status}; "
                f"'{action}' no longer applies."
            )

        try:
            with transaction.atomic():
                return attempt(fresh)
        except VersionConflict as exc:
            log.warning("order.concurrent_modification", version=fresh.version)
            raise ConcurrentModification(
                f"Order {order_id} was modified concurrently; please retry."
            ) from exc

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, order: Order, actor: ActorContext, action: str) -> None:
        role = actor.role
        if role == ActorRole.CUSTOMER and order.customer_id != actor.actor_id:
            raise OrderAccessDenied("Customers may only act on their own orders.")
        if role == ActorRole.OWNER and order.restaurant_id != actor.restaurant_id:
            raise OrderAccessDenied("Owners may only act on their restaurant's orders.")
        if role == ActorRole.RIDER:
            if order.rider_id is None:
                if action not in (OrderAction.ACCEPT_DELIVERY, OrderAction.PICK_UP):
                    raise OrderAccessDenied("The order has no rider assigned.")
            elif order.rider_id != actor.actor_id:
                raise OrderAccessDenied("The order is assigned to another rider.")

    # ------------------------------------------------------------------
    # Non-cancellation transitions
    # ------------------------------------------------------------------

    def _advance(
        self,
        order: Order,
        actor: ActorContext,
        action: str,
        changes: Optional[Dict[str, object]] = None,
        notes: str = "",
    ) -> Order:
        self.authorize(order, actor, action)
        rule = validate_transition(order.status, actor.role, action)
        updated = self._repo.write_transition(
            order,
            rule.to_status,
            actor,
            changes=changes,
            notes=notes or rule.description,
            now=self._clock(),
        )
        self._record_status_change(updated, order.status, actor)
        logger.info(
            "order.transition_committed",
            order_id=str(order.id),
            from_status=order.status,
            to_status=updated.status,
            version=updated.version,
            actor_role=actor.role,
        )
        return updated

    def _record_status_change(
        self,
        updated: Order,
        from_status: Optional[str],
        actor: ActorContext,
        flush: bool = True,
    ) -> None:
        updated.add_domain_event(
            OrderStatusChanged(
                aggregate_id=updated.id,
                from_status=from_status,
                to_status=updated.status,
                actor_role=actor.role,
                version=updated.version,
                occurred_on=updated.updated_at,
            )
        )
        if flush:
            self._emitter.flush(updated)

    # ------------------------------------------------------------------
    # Cancellation path
    # ------------------------------------------------------------------

    def _cancel_once(
        self,
        order: Order,
        actor: ActorContext,
        request: CancellationRequestDTO,
        action: str,
        rejection_reason: str,
        attempted: List[CancellationRecord],
    ) -> tuple[Order, CancellationRecord]:
        self.authorize(order, actor, action)
        validate_transition(order.status, actor.role, action)

        if request.reason_category not in CANCEL_REASONS_BY_ROLE.get(actor.role, set()):
            raise InvalidCancellationReason(
                f"Reason '{request.reason_category}' is not available to {actor.role}."
            )

        now = self._clock()
        policy = self.policy
        eligibility = evaluate_cancellation(
            order,
            actor.role,
            now,
            policy,
            admin_refund_rate=request.refund_rate,
            reason_detail=request.reason_detail,
            fees_refundable=request.fees_refundable,
        )
        eligibility.raise_for_denial()
        quote = calculate_refund(
            order, eligibility.refund_rate, policy, fees_refundable=eligibility.fees_refundable
        )

        record = CancellationRecord(
            created_at=now,
            order=order,
            requested_by=actor.role,
            requested_by_id=actor.actor_id,
            reason_category=request.reason_category,
            reason_detail=request.reason_detail,
            refund_rate=quote.refund_rate,
            refund_amount=quote.refund_amount,
            fees_refunded=eligibility.fees_refundable and order.fees_rendered,
            is_admin_override=actor.role == ActorRole.ADMIN,
            restore_loyalty=quote.restores_loyalty,
            points_restored=quote.restore_points > 0,
            coupon_restored=quote.restore_coupon_id is not None,
        )
        attempted.append(record)

        updated = self._repo.write_transition(
            order,
            OrderStatus.CANCELLED,
            actor,
            changes={
                "cancelled_reason": request.reason_category,
                "cancelled_by": actor.role,
                "rejection_reason": rejection_reason,
            },
            notes=request.reason_detail or eligibility.message,
            now=now,
        )

        record.order = updated
        record.approve()
        self._repo.insert_cancellation(record)
        self._record_status_change(updated, order.status, actor, flush=False)

        if quote.restore_points > 0:
            self._loyalty.restore_points(
                updated.id, updated.customer_id, quote.restore_points, record.id
            )
        if quote.restore_coupon_id is not None:
            self._loyalty.restore_coupon(
                updated.id, updated.customer_id, quote.restore_coupon_id, record.id
            )

        updated.add_domain_event(
            OrderCancelled(
                aggregate_id=updated.id,
                cancellation_id=record.id,
                cancelled_by=actor.role,
                reason=request.reason_category,
                refund_amount=record.refund_amount,
                is_admin_override=record.is_admin_override,
                occurred_on=now,
            )
        )
        if record.cancel_status == CancelStatus.COMPLETED:
            updated.add_domain_event(
                CancellationCompleted(
                    aggregate_id=updated.id,
                    cancellation_id=record.id,
                    refund_amount=record.refund_amount,
                    occurred_on=now,
                )
            )
        self._emitter.flush(updated)

        if record.awaiting_refund:
            record_id = record.id
            transaction.on_commit(lambda: _dispatch_refund(record_id))

        logger.info(
            "order.cancelled",
            order_id=str(updated.id),
            cancellation_id=str(record.id),
            from_status=order.status,
            cancelled_by=actor.role,
            reason=request.reason_category,
            refund_rate=str(quote.refund_rate),
            refund_amount=str(quote.refund_amount),
            fees_withheld=str(quote.fees_withheld),
        )
        return updated, record

    def _record_rejection(self, record: CancellationRecord, fresh: Order) -> None:
        """Persist a losing attempt as an audit-only ``rejected`` record."""
        record.order = fresh
        record.cancel_status = CancelStatus.REQUESTED
        record.reject(f"Order moved to {fresh.status} before the cancellation committed.")
        record.points_restored = False
        record.coupon_restored = False
        self._repo.insert_cancellation(record)


class CustomerActionHandler(BaseActionHandler):
    """Customers only cancel; everything else is driven by the other parties."""

    role = ActorRole.CUSTOMER
    actions: Dict[str, str] = {}


class OwnerActionHandler(BaseActionHandler):
    role = ActorRole.OWNER
    actions = {
        OrderAction.ACCEPT: "accept",
        OrderAction.REJECT: "reject",
        OrderAction.START_PREPARING: "start_preparing",
        OrderAction.MARK_READY: "mark_ready",
    }

    def accept(self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO) -> Order:
        """``pending → confirmed`` and, by default, ``confirmed → preparing``.

        Both writes commit in one transaction: two versions, two history
        rows, two events.  The preparation estimate is informational.
        """

        def attempt(order: Order) -> Order:
            changes: Dict[str, object] = {}
            if dto.estimated_prep_minutes is not None:
                changes["estimated_prep_minutes"] = dto.estimated_prep_minutes
                changes["estimated_delivery_at"] = self._clock() + timedelta(
                    minutes=dto.estimated_prep_minutes + DELIVERY_ALLOWANCE_MINUTES
                )
            confirmed = self._advance(order, actor, OrderAction.ACCEPT, changes)
            if not dto.start_preparing:
                return confirmed
            return self._advance(confirmed, actor, OrderAction.START_PREPARING)

        return self._run(order_id, actor, OrderAction.ACCEPT, attempt)

    def reject(self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO) -> Order:
        request = CancellationRequestDTO(
            reason_category=CancelReasonCategory.OWNER_REJECTED,
            reason_detail=dto.reason,
        )
        order, _record = self.cancel(
            order_id, actor, request, OrderAction.REJECT, rejection_reason=dto.reason
        )
        return order

    def start_preparing(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> Order:
        return self._run(
            order_id,
            actor,
            dto.action,
            lambda order: self._advance(order, actor, OrderAction.START_PREPARING),
        )

    def mark_ready(self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO) -> Order:
        return self._run(
            order_id,
            actor,
            dto.action,
            lambda order: self._advance(order, actor, OrderAction.MARK_READY),
        )


class RiderActionHandler(BaseActionHandler):
    role = ActorRole.RIDER
    actions = {
        OrderAction.ACCEPT_DELIVERY: "accept_delivery",
        OrderAction.PICK_UP: "pick_up",
        OrderAction.START_DELIVERY: "start_delivery",
        OrderAction.COMPLETE_DELIVERY: "complete_delivery",
    }

    def accept_delivery(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> Order:
        """Assign the rider without changing the status (still a versioned write)."""

        def attempt(order: Order) -> Order:
            self.authorize(order, actor, OrderAction.ACCEPT_DELIVERY)
            if order.is_terminal:
                raise AlreadyTerminal(f"Order is already {order.status}.")
            if order.status not in ASSIGNMENT_ACTION_STATES:
                raise InvalidTransition(
                    f"Riders cannot be assigned to orders that are {order.status}."
                )
            if order.rider_id == actor.actor_id:
                return order
            updated = self._repo.write_transition(
                order,
                order.status,
                actor,
                changes={"rider_id": actor.actor_id},
                notes="Rider assigned",
                now=self._clock(),
            )
            self._record_status_change(updated, order.status, actor)
            logger.info(
                "order.rider_assigned",
                order_id=str(order.id),
                rider_id=str(actor.actor_id),
                version=updated.version,
            )
            return updated

        return self._run(order_id, actor, OrderAction.ACCEPT_DELIVERY, attempt)

    def pick_up(self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO) -> Order:
        def attempt(order: Order) -> Order:
            changes = {"rider_id": actor.actor_id} if order.rider_id is None else None
            return self._advance(order, actor, OrderAction.PICK_UP, changes)

        return self._run(order_id, actor, OrderAction.PICK_UP, attempt)

    def start_delivery(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> Order:
        return self._run(
            order_id,
            actor,
            dto.action,
            lambda order: self._advance(order, actor, OrderAction.START_DELIVERY),
        )

    def complete_delivery(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> Order:
        proof = dto.delivery_proof.strip()
        if not proof:
            raise InvalidTransition("A delivery proof is required to complete a delivery.")
        return self._run(
            order_id,
            actor,
            dto.action,
            lambda order: self._advance(
                order, actor, OrderAction.COMPLETE_DELIVERY, {"delivery_proof": proof}
            ),
        )


class AdminActionHandler(BaseActionHandler):
    """Admins override the self-service rate rules; every override is audited."""

    role = ActorRole.ADMIN
    actions: Dict[str, str] = {}

    def cancel(
        self,
        order_id: UUID,
        actor: ActorContext,
        request: CancellationRequestDTO,
        action: str = OrderAction.CANCEL,
        rejection_reason: str = "",
    ) -> tuple[Order, CancellationRecord]:
        order, record = super().cancel(order_id, actor, request, action, rejection_reason)
        logger.warning(
            "order.admin_override",
            audit="admin_override",
            order_id=str(order.id),
            admin_id=str(actor.actor_id),
            cancellation_id=str(record.id),
            reason=request.reason_category,
            reason_detail=request.reason_detail,
            refund_rate=str(record.refund_rate),
            refund_amount=str(record.refund_amount),
            fees_refunded=record.fees_refunded,
        )
        return order, record


class SystemActionHandler(BaseActionHandler):
    role = ActorRole.SYSTEM
    actions = {
        OrderAction.EXPIRE: "expire",
        OrderAction.START_PREPARING: "start_preparing",
    }

    def expire(
        self, order_id: UUID, actor: ActorContext, dto: Optional[AdvanceStatusDTO] = None
    ) -> Order:
        """``pending → cancelled(timeout)`` when the owner never answered."""
        request = CancellationRequestDTO(
            reason_category=CancelReasonCategory.TIMEOUT,
            reason_detail="No restaurant response within the SLA window.",
        )
        order, _record = self.cancel(order_id, actor, request, OrderAction.EXPIRE)
        return order

    def start_preparing(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> Order:
        return self._run(
            order_id,
            actor,
            dto.action,
            lambda order: self._advance(order, actor, OrderAction.START_PREPARING),
        )


# ---------------------------------------------------------------------------
# Refund coordination
# ---------------------------------------------------------------------------


class RefundCoordinator:
    """Drives ``CancellationRecord.refund_status`` through the gateway.

    ``pending → processing`` is claimed with a compare-and-swap, so a
    record is submitted at most once per claim.  The gateway receives the
    record id as idempotency key, so retries never double-refund.
    """

    def __init__(
        self,
        repository: Optional[IOrderRepository] = None,
        emitter: Optional[OrderEventEmitter] = None,
        gateway_factory: Optional[Callable[[], IRefundGateway]] = None,
    ) -> None:
        self._repo = repository or OrderDjangoRepository()
        self._emitter = emitter or OrderEventEmitter()
        self._gateway_factory = gateway_factory or build_refund_gateway

    def submit(self, cancellation_id: UUID | str, claimed: bool = False) -> str:
        """Send the refund to the processor; returns the resulting refund status.

        ``claimed=True`` is used by task retries and admin retries, which
        already moved the record to ``processing``.

        Raises:
            RefundGatewayError: transport failure (the caller decides on retry).
        """
        record = self._repo.get_cancellation(cancellation_id)
        log = logger.bind(cancellation_id=str(record.id), order_id=str(record.order_id))

        if claimed:
            if record.refund_status != RefundStatus.PROCESSING:
                log.info("refund.skipped", refund_status=record.refund_status)
                return record.refund_status
            self._repo.update_cancellation(
                record.id, {"refund_attempts": F("refund_attempts") + 1}
            )
        else:
            won = self._repo.update_cancellation(
                record.id,
                {
                    "refund_status": RefundStatus.PROCESSING,
                    "refund_attempts": F("refund_attempts") + 1,
                },
                expected={
                    "refund_status": RefundStatus.PENDING,
                    "cancel_status": CancelStatus.APPROVED,
                },
            )
            if not won:
                log.info("refund.already_claimed", refund_status=record.refund_status)
                return record.refund_status

        gateway = self._gateway_factory()
        outcome = gateway.refund(
            record.order.payment_id, record.refund_amount, idempotency_key=str(record.id)
        )
        log.info("refund.submitted", outcome=outcome.status, gateway_ref=outcome.gateway_ref)

        if outcome.status == OUTCOME_ACCEPTED:
            self._repo.update_cancellation(record.id, {"gateway_ref": outcome.gateway_ref})
            return RefundStatus.PROCESSING
        updated = self.handle_callback(
            record.id,
            success=outcome.status == OUTCOME_COMPLETED,
            gateway_ref=outcome.gateway_ref,
            reason=outcome.reason,
        )
        return updated.refund_status

    @transaction.atomic
    def handle_callback(
        self,
        cancellation_id: UUID | str,
        success: bool,
        gateway_ref: str = "",
        reason: str = "",
    ) -> CancellationRecord:
        """Apply the processor's final answer.  Duplicate callbacks are no-ops."""
        record = self._repo.get_cancellation(cancellation_id)
        log = logger.bind(cancellation_id=str(record.id), order_id=str(record.order_id))

        if success:
            fields = {
                "refund_status": RefundStatus.COMPLETED,
                "cancel_status": CancelStatus.COMPLETED,
                "gateway_ref": gateway_ref or record.gateway_ref,
                "failure_reason": "",
            }
        else:
            fields = {
                "refund_status": RefundStatus.FAILED,
                "gateway_ref": gateway_ref or record.gateway_ref,
                "failure_reason": reason or "Refund failed.",
            }

        applied = self._repo.update_cancellation(
            record.id, fields, expected={"refund_status": RefundStatus.PROCESSING}
        )
        if not applied:
            log.info("refund.callback_ignored", refund_status=record.refund_status)
            return record

        order = record.order
        if success:
            order.add_domain_event(
                CancellationCompleted(
                    aggregate_id=order.id,
                    cancellation_id=record.id,
                    refund_amount=record.refund_amount,
                )
            )
            log.info("refund.completed", refund_amount=str(record.refund_amount))
        else:
            order.add_domain_event(
                RefundFailed(
                    aggregate_id=order.id,
                    cancellation_id=record.id,
                    refund_amount=record.refund_amount,
                    reason=fields["failure_reason"],
                )
            )
            log.error("refund.failed", reason=fields["failure_reason"])
        self._emitter.flush(order)
        return self._repo.get_cancellation(record.id)

    def retry(self, cancellation_id: UUID | str, actor: ActorContext) -> CancellationRecord:
        """Admin-only ``failed → processing``; re-dispatches with the same key."""
        if actor.role != ActorRole.ADMIN:
            raise OrderAccessDenied("Only admins can retry refunds.")
        record = self._repo.get_cancellation(cancellation_id)
        with transaction.atomic():
            claimed = self._repo.update_cancellation(
                record.id,
                {"refund_status": RefundStatus.PROCESSING, "failure_reason": ""},
                expected={"refund_status": RefundStatus.FAILED},
            )
            if not claimed:
                raise InvalidTransition(
                    f"Only failed refunds can be retried (currently {record.refund_status})."
                )
            transaction.on_commit(lambda: self._dispatch_claimed(record.id))

        logger.warning(
            "refund.retry_requested",
            audit="admin_override",
            cancellation_id=str(record.id),
            admin_id=str(actor.actor_id),
        )
        return self._repo.get_cancellation(record.id)

    def _dispatch_claimed(self, cancellation_id: UUID) -> None:
        """Queue an admin retry; hand the record back to ``failed`` if the broker is down."""
        if _dispatch_refund(cancellation_id, claimed=True):
            return
        self._repo.update_cancellation(
            cancellation_id,
            {
                "refund_status": RefundStatus.FAILED,
                "failure_reason": "Refund retry could not be queued.",
            },
            expected={"refund_status": RefundStatus.PROCESSING},
        )


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class OrderLifecycleService:
    """Application service exposing the lifecycle operations.

    Receives collaborators via constructor injection (DIP); defaults wire
    the Django repository, the outbox emitter and the outbox loyalty
    gateway.
    """

    _HANDLER_CLASSES = {
        ActorRole.CUSTOMER: CustomerActionHandler,
        ActorRole.OWNER: OwnerActionHandler,
        ActorRole.RIDER: RiderActionHandler,
        ActorRole.ADMIN: AdminActionHandler,
        ActorRole.SYSTEM: SystemActionHandler,
    }

    def __init__(
        self,
        repository: Optional[IOrderRepository] = None,
        emitter: Optional[OrderEventEmitter] = None,
        loyalty: Optional[ILoyaltyGateway] = None,
        policy: Optional[CancellationPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        refunds: Optional[RefundCoordinator] = None,
    ) -> None:
        self._repo = repository or OrderDjangoRepository()
        self._emitter = emitter or OrderEventEmitter()
        self._loyalty = loyalty or OutboxLoyaltyGateway(self._emitter)
        self._policy = policy
        self._clock = clock or timezone.now
        self._refunds = refunds or RefundCoordinator(self._repo, self._emitter)
        self._handlers = {
            role: handler_class(
                self._repo, self._emitter, self._loyalty, self._clock, policy
            )
            for role, handler_class in self._HANDLER_CLASSES.items()
        }

    def handler_for(self, actor: ActorContext) -> BaseActionHandler:
        return self._handlers[actor.role]

    @property
    def policy(self) -> CancellationPolicy:
        return self._policy or CancellationPolicy.from_settings()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @transaction.atomic
    def place_order(self, dto: PlaceOrderDTO) -> Order:
        """Persist a new ``pending`` order at version 1."""
        order = self._repo.create(dto, now=self._clock())
        order.add_domain_event(
            OrderStatusChanged(
                aggregate_id=order.id,
                from_status=None,
                to_status=order.status,
                actor_role=ActorRole.CUSTOMER,
                version=order.version,
                occurred_on=order.created_at,
            )
        )
        self._emitter.flush(order)
        logger.info(
            "order.placed",
            order_id=str(order.id),
            customer_id=str(order.customer_id),
            restaurant_id=str(order.restaurant_id),
            total_amount=str(order.total_amount),
        )
        return order

    def request_cancellation(
        self, order_id: UUID, actor: ActorContext, request: CancellationRequestDTO
    ) -> CancellationResultDTO:
        handler = self.handler_for(actor)
        _order, record = handler.cancel(order_id, actor, request)
        return CancellationResultDTO(
            cancellation_id=record.id,
            cancel_status=record.cancel_status,
            refund_status=record.refund_status,
            refund_amount=record.refund_amount,
            refund_rate=record.refund_rate,
        )

    def advance_status(
        self, order_id: UUID, actor: ActorContext, dto: AdvanceStatusDTO
    ) -> AdvanceStatusResultDTO:
        if dto.action == OrderAction.CANCEL:
            raise InvalidTransition("Use the cancellation endpoint to cancel an order.")
        order = self.handler_for(actor).perform(order_id, actor, dto)
        return AdvanceStatusResultDTO(
            order_id=order.id,
            new_status=order.status,
            version=order.version,
            updated_at=order.updated_at,
        )

    def handle_refund_callback(
        self,
        cancellation_id: UUID | str,
        success: bool,
        gateway_ref: str = "",
        reason: str = "",
    ) -> CancellationRecord:
        return self._refunds.handle_callback(cancellation_id, success, gateway_ref, reason)

    def retry_refund(
        self, cancellation_id: UUID | str, actor: ActorContext
    ) -> CancellationRecord:
        return self._refunds.retry(cancellation_id, actor)

    def sweep_pending_timeouts(self, now: Optional[datetime] = None) -> List[UUID]:
        """Expire every ``pending`` order older than the owner-response SLA.

        Each order goes through the regular system cancellation path, so a
        late owner acceptance and the sweep race safely on the version.
        """
        now = now or self._clock()
        cutoff = now - self.policy.pending_sla
        system = ActorContext.system()
        handler = self.handler_for(system)
        expired: List[UUID] = []
        for order_id in self._repo.pending_older_than(cutoff):
            try:
                handler.perform(order_id, system, AdvanceStatusDTO(action=OrderAction.EXPIRE))
            except OrderLifecycleError as exc:
                logger.info(
                    "order.timeout_sweep.skipped",
                    order_id=str(order_id),
                    error=exc.code,
                    detail=str(exc),
                )
                continue
            expired.append(order_id)
        logger.info("order.timeout_sweep.finished", cutoff=cutoff.isoformat(), expired=len(expired))
        return expired

    def redispatch_pending_refunds(self, now: Optional[datetime] = None) -> List[UUID]:
        """Re-queue approved refunds whose post-commit dispatch never ran.

        Records younger than ``REFUND_REDISPATCH_AFTER_SECONDS`` are left
        alone; their first dispatch may still be in flight.  A duplicate
        dispatch is harmless because ``submit`` claims the record first.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=settings.REFUND_REDISPATCH_AFTER_SECONDS)
        dispatched = [
            record_id
            for record_id in self._repo.refunds_awaiting_dispatch(cutoff)
            if _dispatch_refund(record_id)
        ]
        logger.info(
            "refund.redispatch_sweep.finished",
            cutoff=cutoff.isoformat(),
            dispatched=len(dispatched),
        )
        return dispatched

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: UUID | str) -> Order:
        return self._repo.get_order(order_id)

    def get_order_for(self, order_id: UUID | str, actor: ActorContext) -> Order:
        """Load an order the actor is a party to.

        Riders may also read unassigned orders, which are offered to them.
        """
        order = self._repo.get_order(order_id)
        self.handler_for(actor).authorize(order, actor, OrderAction.ACCEPT_DELIVERY)
        return order

    def get_cancellation_for(
        self, cancellation_id: UUID | str, actor: ActorContext
    ) -> CancellationRecord:
        record = self._repo.get_cancellation(cancellation_id)
        self.handler_for(actor).authorize(record.order, actor, OrderAction.CANCEL)
        return record

    def check_cancelability(
        self,
        order_id: UUID,
        actor: ActorContext,
        refund_rate: Optional[Decimal] = None,
    ) -> CancelabilityDTO:
        """Preview whether ``actor`` could cancel now and for how much.

        Never raises for terminal orders; the answer carries the reason.
        """
        order = self._repo.get_order(order_id)
        handler = self.handler_for(actor)
        handler.authorize(order, actor, OrderAction.CANCEL)
        action = OrderAction.EXPIRE if actor.role == ActorRole.SYSTEM else OrderAction.CANCEL

        try:
            validate_transition(order.status, actor.role, action)
        except OrderLifecycleError as exc:
            return CancelabilityDTO(
                can_cancel=False,
                refund_rate=Decimal("0"),
                refund_amount=Decimal("0"),
                message=str(exc),
            )

        policy = self.policy
        eligibility = evaluate_cancellation(
            order,
            actor.role,
            self._clock(),
            policy,
            admin_refund_rate=refund_rate,
            require_justification=False,
        )
        amount = Decimal("0")
        if eligibility.allowed:
            amount = calculate_refund(order, eligibility.refund_rate, policy).refund_amount
        return CancelabilityDTO(
            can_cancel=eligibility.allowed,
            refund_rate=eligibility.refund_rate,
            refund_amount=amount,
            message=eligibility.message,
        )

    def list_settlement_orders(self) -> QuerySet:
        """Terminal orders, for settlement readers."""
        return self._repo.list_terminal()
