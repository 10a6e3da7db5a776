"""Celery application and worker configuration.

Defines the Celery instance that consumes bulk processing jobs from the
Redis broker. The ``worker_init`` hook configures logging and recovers
runs orphaned by a previous unclean shutdown.
"""
from celery import Celery
from celery.signals import worker_init

from skillbase.config import get_settings
from skillbase.utils.log_setup import setup_logging

settings = get_settings()

celery_app = Celery(
    "skillbase_worker",
    broker=settings.REDIS_URL or "redis://localhost:6379/0",
    backend=settings.REDIS_URL or "redis://localhost:6379/0",
    include=["skillbase.tasks.batch"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=False,           # ACK on receipt; an interrupted run is recovered, not replayed
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.CELERY_CONCURRENCY,
    result_expires=86400,
    broker_connection_retry_on_startup=True,
    task_default_queue=settings.BULK_QUEUE_NAME,
)


@worker_init.connect
def setup_worker(**kwargs):
    setup_logging(settings.LOG_LEVEL)

    from skillbase.database import create_tables
    from skillbase.schemas.common import DispatchMode, RunStatus
    from skillbase.utils.startup import recover_orphaned_runs
    create_tables()
    # queued async runs still have a message waiting on the broker
    recover_orphaned_runs(modes=[DispatchMode.ASYNC.value], statuses=[RunStatus.IN_PROGRESS.value])
