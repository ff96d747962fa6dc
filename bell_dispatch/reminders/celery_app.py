import logging
import sys

from celery import Celery
from celery.signals import setup_logging
from kombu import Exchange, Queue

from bell_dispatch.core.config import settings as core_settings
from .config import settings


broker_url = settings.CELERY_BROKER_URL or core_settings.REDIS_URL
result_backend = settings.CELERY_RESULT_BACKEND or None

celery_app = Celery(
    "reminders",
    broker=broker_url,
    backend=result_backend,
)

exchange = Exchange("reminders", type="direct", durable=True)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    task_default_queue="reminders",
    task_default_exchange="reminders",
    task_default_routing_key="reminders",
    include=["bell_dispatch.reminders.tasks"],
    task_queues=(
        Queue("reminders", exchange=exchange, routing_key="reminders", durable=True),
    ),
)

# Celery Beat schedule; a missed dispatch run is dropped rather than stacked
celery_app.conf.beat_schedule = {
    "dispatch-cycle": {
        "task": "reminders.dispatch_cycle",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
        "options": {"expires": settings.DISPATCH_INTERVAL_SECONDS},
    },
    "sweep-inactive": {
        "task": "reminders.sweep_inactive",
        "schedule": settings.SWEEP_INTERVAL_SECONDS,
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    logging.basicConfig(
        level=core_settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
