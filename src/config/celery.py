"""
Celery application for the delivery order lifecycle service.

``DJANGO_SETTINGS_MODULE`` is set before the app is created so Celery
reads the Django settings (``CELERY_`` prefix), including the beat
schedule for the timeout sweep and the outbox relay.
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("order_lifecycle")

app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up modules.core.tasks and modules.orders.tasks
app.autodiscover_tasks()
