"""
Celery configuration for Call Gateway Service.
"""
import os
from celery import Celery
from celery.signals import worker_shutting_down

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'call_gateway.settings')

app = Celery('call_gateway')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()


@worker_shutting_down.connect
def _cancel_outstanding_waits(**kwargs):
    """Unblock token waits, backoff sleeps and polling when the worker stops."""
    from calls.services.rate_limiter import SHUTDOWN_EVENT

    SHUTDOWN_EVENT.set()
