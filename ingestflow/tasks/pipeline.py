"""
Pipeline Tasks
Celery tasks for the intake, decomposition and row-processing queues.
"""

import logging
from typing import Any, Dict, Optional

import redis
from celery.exceptions import Reject

from ..config import get_settings
from ..db.session import get_session_factory
from ..errors import NonRetryableError
from ..ingestion.pipeline import RETRYABLE_ERRORS, Pipeline, build_pipeline
from ..ingestion.row_processing import ChunkOutcome
from ..models.jobs import Job, parse_job
from ..services.lease_service import RedisLeaseService
from ..services.progress_publisher import RedisProgressPublisher
from .celery_app import app
from .queue import (
    DECOMPOSITION_TASK,
    INTAKE_TASK,
    ROW_PROCESSING_TASK,
    CeleryJobQueue,
    retry_delay,
)

logger = logging.getLogger(__name__)

settings = get_settings()

_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """Get the worker's pipeline (singleton), wired to Redis and Celery."""
    global _pipeline
    if _pipeline is None:
        client = redis.Redis.from_url(settings.redis_url)
        _pipeline = build_pipeline(
            settings,
            queue=CeleryJobQueue(app),
            publisher=RedisProgressPublisher(client, settings.progress_channel_prefix),
            lease_service=RedisLeaseService(client, settings.lock_key_prefix),
            session_factory=get_session_factory(),
        )
        logger.info("Pipeline initialized for worker")
    return _pipeline


def reset_pipeline() -> None:
    """Drop the cached pipeline (useful for testing)."""
    global _pipeline
    _pipeline = None


def submit_upload(file_path: str, mime_type: str, original_name: str, size_bytes: int) -> str:
    """
    Hand a validated upload to the pipeline.

    Called by the upload collaborator once the file is on disk.

    Returns:
        The new upload id
    """
    return get_pipeline().intake.submit(file_path, mime_type, original_name, size_bytes)


def _run_job(task, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Run one job with the queue's failure policy.

    Non-retryable errors reject the message without requeueing. Retryable
    errors back off exponentially until ``max_retries``, then the stage's
    give-up handler marks the upload or chunk failed. Any other error runs
    the give-up handler at once and fails the task.
    """
    job: Job = parse_job(payload)
    pipeline = get_pipeline()

    try:
        result = pipeline.dispatch(job)

    except NonRetryableError as e:
        logger.error(f"Discarding {job.kind} job for upload {job.upload_id}: {e.message}")
        raise Reject(e.message, requeue=False)

    except RETRYABLE_ERRORS as e:
        logger.error(f"Error in {job.kind} job for upload {job.upload_id}: {e}", exc_info=True)

        if task.request.retries >= task.max_retries:
            logger.error(f"Max retries exceeded for {job.kind} job of upload {job.upload_id}")
            pipeline.on_retries_exhausted(job, e)
            raise

        countdown = retry_delay(
            task.request.retries, settings.retry_backoff_seconds, settings.retry_backoff_max_seconds
        )
        raise task.retry(exc=e, countdown=countdown)

    except Exception as e:
        # Not retryable and not expected: settle the upload or chunk, then fail the task
        logger.error(f"Unexpected error in {job.kind} job for upload {job.upload_id}: {e}", exc_info=True)
        pipeline.on_retries_exhausted(job, e)
        raise

    if isinstance(result, ChunkOutcome):
        return result.to_dict()
    return result


@app.task(bind=True, name=INTAKE_TASK, max_retries=settings.max_retries, acks_late=True)
def intake_upload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Move an uploaded file to the working area and queue decomposition.

    Args:
        payload: Intake envelope ``{uploadId, filePath, mimeType, originalName, sizeBytes}``
    """
    return _run_job(self, payload)


@app.task(bind=True, name=DECOMPOSITION_TASK, max_retries=settings.max_retries, acks_late=True)
def decompose_upload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Split a file into chunks and queue one row-processing job per chunk.

    Args:
        payload: Decomposition envelope ``{uploadId, filePath, mimeType}``
    """
    return _run_job(self, payload)


@app.task(
    bind=True,
    name=ROW_PROCESSING_TASK,
    max_retries=settings.max_retries,
    acks_late=True,
    rate_limit=settings.row_rate_limit,
)
def process_chunk(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and store the rows of one chunk.

    Args:
        payload: Row-processing envelope ``{uploadId, chunkIndex, chunkPath}``
    """
    return _run_job(self, payload)
