# backend/trustgate/tasks/celery_app.py
import logging

import nest_asyncio
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown

from trustgate.core.config import settings
from trustgate.db.session import dispose_worker_db_resources_sync, initialize_worker_db_resources

logger = logging.getLogger("trustgate.tasks.celery_app")

celery_app = Celery(
    "worker",
    broker=str(settings.CELERY_BROKER_URL),
    backend=str(settings.CELERY_RESULT_BACKEND),
    include=["trustgate.tasks.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    task_track_started=True,
    result_expires=3600,
)

# Run with `celery -A trustgate.tasks.celery_app beat`
celery_app.conf.beat_schedule = {
    "cleanup-audit-logs-daily": {
        "task": "trustgate.tasks.maintenance.cleanup_audit_logs",
        "schedule": crontab(hour=3, minute=0),
    },
    "purge-expired-blacklist-hourly": {
        "task": "trustgate.tasks.maintenance.purge_expired_blacklist",
        "schedule": crontab(minute=15),
    },
}


# --- Worker Process Lifecycle Signal Handlers ---


@worker_process_init.connect(weak=False)
def init_worker_process_signal(**_kwargs):
    """Signal handler for when a Celery worker process starts."""
    logger.info("CELERY_WORKER_PROCESS_INIT: Applying nest_asyncio for event loop compatibility.")
    nest_asyncio.apply()
    initialize_worker_db_resources()
    logger.info("CELERY_WORKER_PROCESS_INIT: DB resources initialization complete.")


@worker_process_shutdown.connect(weak=False)
def shutdown_worker_process_signal(**_kwargs):
    """Signal handler for when a Celery worker process shuts down."""
    logger.info("CELERY_WORKER_PROCESS_SHUTDOWN: Signal received. Disposing DB resources.")
    dispose_worker_db_resources_sync()
    logger.info("CELERY_WORKER_PROCESS_SHUTDOWN: DB resources disposal complete.")
