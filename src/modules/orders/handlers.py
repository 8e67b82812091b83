"""Event handlers for Orders domain events.

Handlers run when the outbox relay publishes a committed event.  The
notification, settlement and loyalty systems are external; here they are
represented by structured log lines other services consume.
"""

from __future__ import annotations

import structlog

from modules.orders.constants import STATUS_NOTIFICATION_TARGETS, TERMINAL_STATES
from modules.orders.events import (
    CancellationCompleted,
    CouponRestoreRequested,
    OrderCancelled,
    OrderStatusChanged,
    PointsRestoreRequested,
    RefundFailed,
)
from shared.domain.bus import IEventHandler

logger = structlog.get_logger(__name__)


class StatusNotificationHandler(IEventHandler[OrderStatusChanged]):
    """Fan a status change out to the parties that care about it."""

    def handle(self, event: OrderStatusChanged) -> None:
        # Rider assignment keeps the status; nobody is notified.
        if event.from_status == event.to_status:
            return
        for recipient in STATUS_NOTIFICATION_TARGETS.get(event.to_status, ()):
            logger.info(
                "notification.requested",
                order_id=str(event.aggregate_id),
                recipient=recipient,
                status=event.to_status,
                version=event.version,
            )


class SettlementHandler(IEventHandler[OrderStatusChanged]):
    def handle(self, event: OrderStatusChanged) -> None:
        if event.to_status not in TERMINAL_STATES or event.from_status == event.to_status:
            return
        logger.info(
            "settlement.order_closed",
            order_id=str(event.aggregate_id),
            final_status=event.to_status,
            version=event.version,
        )


class OrderCancelledHandler(IEventHandler[OrderCancelled]):
    def handle(self, event: OrderCancelled) -> None:
        logger.info(
            "settlement.cancellation_recorded",
            order_id=str(event.aggregate_id),
            cancellation_id=str(event.cancellation_id),
            cancelled_by=event.cancelled_by,
            refund_amount=str(event.refund_amount),
            is_admin_override=event.is_admin_override,
        )


class CancellationCompletedHandler(IEventHandler[CancellationCompleted]):
    def handle(self, event: CancellationCompleted) -> None:
        logger.info(
            "notification.refund_completed",
            order_id=str(event.aggregate_id),
            cancellation_id=str(event.cancellation_id),
            refund_amount=str(event.refund_amount),
        )


class RefundFailedHandler(IEventHandler[RefundFailed]):
    """Refund failures need a human; they are logged at error level."""

    def handle(self, event: RefundFailed) -> None:
        logger.error(
            "refund.manual_followup_required",
            order_id=str(event.aggregate_id),
            cancellation_id=str(event.cancellation_id),
            refund_amount=str(event.refund_amount),
            reason=event.reason,
        )


class PointsRestoreHandler(IEventHandler[PointsRestoreRequested]):
    """Hand consumed points back through the loyalty ledger."""

    def handle(self, event: PointsRestoreRequested) -> None:
        logger.info(
            "loyalty.points_restore_requested",
            order_id=str(event.aggregate_id),
            customer_id=str(event.customer_id),
            amount=str(event.amount),
            cancellation_id=str(event.cancellation_id),
        )


class CouponRestoreHandler(IEventHandler[CouponRestoreRequested]):
    def handle(self, event: CouponRestoreRequested) -> None:
        logger.info(
            "loyalty.coupon_restore_requested",
            order_id=str(event.aggregate_id),
            customer_id=str(event.customer_id),
            coupon_id=event.coupon_id,
            cancellation_id=str(event.cancellation_id),
        )


status_notification_handler = StatusNotificationHandler()
settlement_handler = SettlementHandler()
order_cancelled_handler = OrderCancelledHandler()
cancellation_completed_handler = CancellationCompletedHandler()
refund_failed_handler = RefundFailedHandler()
points_restore_handler = PointsRestoreHandler()
coupon_restore_handler = CouponRestoreHandler()
