"""
Celery Application Configuration

One queue per stage, each drained by its own worker pool. Row workers take
their pool size from ROW_WORKER_CONCURRENCY; the others pin it with -c:

    celery -A ingestflow.tasks.celery_app worker -Q file-upload -c 1
    celery -A ingestflow.tasks.celery_app worker -Q file-chunking -c 1
    celery -A ingestflow.tasks.celery_app worker -Q data-processing
"""

import logging

from celery import Celery
from celery.signals import setup_logging

from ..config import get_settings
from .queue import (
    DATA_PROCESSING_QUEUE,
    DECOMPOSITION_TASK,
    FILE_CHUNKING_QUEUE,
    FILE_UPLOAD_QUEUE,
    INTAKE_TASK,
    ROW_PROCESSING_TASK,
)

settings = get_settings()

# Create Celery app
app = Celery(
    "ingestflow",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=[
        "ingestflow.tasks.pipeline",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,  # Redeliver jobs of a crashed worker
    task_reject_on_worker_lost=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.row_worker_concurrency,
    worker_max_tasks_per_child=1000,
    task_default_queue=FILE_UPLOAD_QUEUE,
    task_routes={
        INTAKE_TASK: {"queue": FILE_UPLOAD_QUEUE},
        DECOMPOSITION_TASK: {"queue": FILE_CHUNKING_QUEUE},
        ROW_PROCESSING_TASK: {"queue": DATA_PROCESSING_QUEUE},
    },
    task_annotations={
        ROW_PROCESSING_TASK: {"rate_limit": settings.row_rate_limit},
    },
)


@setup_logging.connect
def configure_worker_logging(**kwargs):
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


if __name__ == "__main__":
    app.start()
