"""
Job Queue
Stage-facing interface for enqueueing jobs, with a Celery transport and an
in-process FIFO used for inline runs and tests.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Tuple, assert_never

from celery import Celery

from ..errors import NonRetryableError
from ..models.jobs import DecompositionJob, IntakeJob, Job, RowProcessingJob

logger = logging.getLogger(__name__)

# Queue names
FILE_UPLOAD_QUEUE = "file-upload"
FILE_CHUNKING_QUEUE = "file-chunking"
DATA_PROCESSING_QUEUE = "data-processing"

# Task names
INTAKE_TASK = "tasks.intake_upload"
DECOMPOSITION_TASK = "tasks.decompose_upload"
ROW_PROCESSING_TASK = "tasks.process_chunk"


def retry_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: base * 2^attempt, capped."""
    return min(base_seconds * (2 ** attempt), max_seconds)


def route_for(job: Job) -> Tuple[str, str]:
    """(task name, queue name) for a job variant."""
    if isinstance(job, IntakeJob):
        return INTAKE_TASK, FILE_UPLOAD_QUEUE
    elif isinstance(job, DecompositionJob):
        return DECOMPOSITION_TASK, FILE_CHUNKING_QUEUE
    elif isinstance(job, RowProcessingJob):
        return ROW_PROCESSING_TASK, DATA_PROCESSING_QUEUE
    else:
        assert_never(job)


class JobQueue(ABC):
    """Where stages put follow-up work."""

    @abstractmethod
    def enqueue(self, job: Job) -> None:
        """Queue a job for its stage."""


class CeleryJobQueue(JobQueue):
    """Sends jobs to the stage queues of a Celery app by task name."""

    def __init__(self, celery_app: Celery):
        self.celery_app = celery_app

    def enqueue(self, job: Job) -> None:
        task_name, queue_name = route_for(job)
        result = self.celery_app.send_task(
            task_name, kwargs={"payload": job.to_payload()}, queue=queue_name
        )
        logger.debug(f"Queued {task_name} for upload {job.upload_id} as {result.id}")


@dataclass
class QueuedJob:
    job: Job
    attempt: int = 0


class LocalJobQueue(JobQueue):
    """
    In-process FIFO with the same retry policy as the Celery tasks.

    ``drain`` runs jobs one at a time until the queue is empty: non-retryable
    failures are discarded, retryable ones are put back until the attempt
    cap, after which ``on_exhausted`` is called. Any other error calls
    ``on_exhausted`` straight away and propagates.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retryable: Tuple[type, ...] = (Exception,),
        backoff_seconds: float = 0.0,
        backoff_max_seconds: float = 0.0,
    ):
        self.max_retries = max_retries
        self.retryable = retryable
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._pending: Deque[QueuedJob] = deque()
        self.completed: List[Tuple[Job, Any]] = []
        self.discarded: List[Tuple[Job, Exception]] = []
        self.failed: List[Tuple[Job, Exception]] = []

    def enqueue(self, job: Job) -> None:
        self._pending.append(QueuedJob(job=job))

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self) -> List[Job]:
        return [q.job for q in self._pending]

    def pop(self) -> Job:
        """Take the next job without running it."""
        return self._pending.popleft().job

    def drain(
        self,
        handler: Callable[[Job], Any],
        on_exhausted: Callable[[Job, Exception], None] = lambda job, exc: None,
    ) -> int:
        """
        Run queued jobs (including the ones they enqueue) until none are left.

        Returns:
            Number of job executions
        """
        runs = 0
        while self._pending:
            queued = self._pending.popleft()
            runs += 1
            try:
                self.completed.append((queued.job, handler(queued.job)))
            except NonRetryableError as e:
                logger.warning(f"Discarding {queued.job.kind} job for {queued.job.upload_id}: {e}")
                self.discarded.append((queued.job, e))
            except self.retryable as e:
                if queued.attempt < self.max_retries:
                    delay = retry_delay(queued.attempt, self.backoff_seconds, self.backoff_max_seconds)
                    logger.warning(
                        f"Retrying {queued.job.kind} job for {queued.job.upload_id} "
                        f"(attempt {queued.attempt + 1}/{self.max_retries}) in {delay:.1f}s: {e}"
                    )
                    if delay:
                        time.sleep(delay)
                    self._pending.append(QueuedJob(job=queued.job, attempt=queued.attempt + 1))
                else:
                    logger.error(f"Max retries exceeded for {queued.job.kind} job: {e}")
                    on_exhausted(queued.job, e)
                    self.failed.append((queued.job, e))
            except Exception as e:
                logger.error(f"Unexpected error in {queued.job.kind} job for {queued.job.upload_id}: {e}")
                on_exhausted(queued.job, e)
                self.failed.append((queued.job, e))
                raise
        return runs
