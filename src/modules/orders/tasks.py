"""Async tasks for the order lifecycle.

- ``process_refund``: submit an approved cancellation's refund to the
  payment processor, with exponential backoff on transient errors.
- ``expire_stale_pending_orders``: periodic owner-response SLA sweep.
- ``dispatch_pending_refunds``: periodic re-queue of refunds whose
  post-commit dispatch never reached the broker.
"""

import structlog
from celery import shared_task
from django.conf import settings

from modules.orders.gateways import RefundGatewayError
from modules.orders.services import OrderLifecycleService, RefundCoordinator

logger = structlog.get_logger(__name__)


@shared_task(bind=True, name="orders.process_refund", acks_late=True)
def process_refund(self, cancellation_id, claimed=False):
    """Send one refund to the gateway.

    The first run claims the record (``pending → processing``); retries
    run with ``claimed=True`` and reuse the same idempotency key.
    """
    coordinator = RefundCoordinator()
    already_claimed = claimed or self.request.retries > 0
    try:
        return coordinator.submit(cancellation_id, claimed=already_claimed)
    except RefundGatewayError as exc:
        max_retries = settings.REFUND_GATEWAY_MAX_RETRIES
        if exc.retryable and self.request.retries < max_retries:
            countdown = settings.REFUND_GATEWAY_RETRY_BACKOFF_SECONDS * (
                2 ** self.request.retries
            )
            logger.warning(
                "refund.retry_scheduled",
                cancellation_id=str(cancellation_id),
                attempt=self.request.retries + 1,
                countdown=countdown,
                error=str(exc),
            )
            raise self.retry(
                exc=exc,
                countdown=countdown,
                max_retries=max_retries,
                args=[cancellation_id],
                kwargs={"claimed": True},
            )
        record = coordinator.handle_callback(cancellation_id, success=False, reason=str(exc))
        return record.refund_status


@shared_task(name="orders.expire_stale_pending_orders")
def expire_stale_pending_orders():
    """Cancel pending orders the restaurant never answered within the SLA."""
    expired = OrderLifecycleService().sweep_pending_timeouts()
    return {"expired": [str(order_id) for order_id in expired]}


@shared_task(name="orders.dispatch_pending_refunds")
def dispatch_pending_refunds():
    """Queue refunds whose post-commit dispatch was lost."""
    dispatched = OrderLifecycleService().redispatch_pending_refunds()
    return {"dispatched": [str(record_id) for record_id in dispatched]}
