"""Async tasks for the core module."""

import structlog
from celery import shared_task
from django.conf import settings
from django.db import transaction

from modules.core.models import OutboxEvent
from shared.domain.events import event_from_payload
from shared.infrastructure.bus import event_bus

logger = structlog.get_logger(__name__)


@shared_task(name="core.relay_outbox_events")
def relay_outbox_events(batch_size=None):
    """Publish committed outbox events to the in-process bus.

    Events are delivered in creation order.  A handler failure marks the
    row as failed; it is picked up again until ``OUTBOX_MAX_RETRIES``.
    """
    batch_size = batch_size or settings.OUTBOX_RELAY_BATCH_SIZE
    rows = list(OutboxEvent.objects.deliverable(settings.OUTBOX_MAX_RETRIES)[:batch_size])
    published = failed = 0

    for row in rows:
        log = logger.bind(outbox_id=str(row.id), event_type=row.event_type, topic=row.topic)
        try:
            event = event_from_payload(row.event_type, row.payload)
            with transaction.atomic():
                event_bus.publish(event)
                row.mark_as_published()
        except Exception as exc:  # noqa: BLE001 - any handler error is recorded and retried
            log.exception("outbox.relay_failed", error=str(exc))
            row.mark_as_failed(str(exc))
            failed += 1
            continue
        published += 1

    logger.info("outbox.relay_finished", published=published, failed=failed)
    return {"published": published, "failed": failed}
