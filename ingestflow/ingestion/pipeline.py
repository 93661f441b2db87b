"""
Pipeline Wiring
Builds the three stages around shared collaborators and routes jobs to them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, assert_never

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from ..config.settings import Settings
from ..db.repository import UploadRepository
from ..errors import DecompositionError, TransientInfrastructureError
from ..models.jobs import DecompositionJob, IntakeJob, Job, RowProcessingJob
from ..services.chunk_store import ChunkStore, LocalChunkStore
from ..services.lease_service import LeaseService
from ..services.progress_publisher import ProgressPublisher
from ..services.upload_query import UploadQueryService
from ..services.working_area import WorkingArea
from ..tasks.queue import JobQueue
from .decomposition import DecompositionStage
from .intake import IntakeStage
from .row_processing import RowProcessingStage
from .row_writer import RowWriter, StoreRowWriter

logger = logging.getLogger(__name__)

# Errors a job is retried for; anything non-retryable is discarded
RETRYABLE_ERRORS = (TransientInfrastructureError, DecompositionError, OSError, OperationalError)


@dataclass
class Pipeline:
    """The three stages plus the read side over their records."""

    uploads: UploadRepository
    intake: IntakeStage
    decomposition: DecompositionStage
    row_processing: RowProcessingStage
    query: UploadQueryService

    def dispatch(self, job: Job) -> Any:
        """Run the stage that owns ``job``."""
        if isinstance(job, IntakeJob):
            return self.intake.run(job)
        elif isinstance(job, DecompositionJob):
            return self.decomposition.run(job)
        elif isinstance(job, RowProcessingJob):
            return self.row_processing.run(job)
        else:
            assert_never(job)

    def on_retries_exhausted(self, job: Job, error: Exception) -> None:
        """Mark the upload or chunk failed once a job has used up its retries."""
        if isinstance(job, IntakeJob):
            self.intake.abandon(job, error)
        elif isinstance(job, DecompositionJob):
            self.decomposition.abandon(job, error)
        elif isinstance(job, RowProcessingJob):
            self.row_processing.abandon(job, error)
        else:
            assert_never(job)


def build_pipeline(
    settings: Settings,
    queue: JobQueue,
    publisher: ProgressPublisher,
    lease_service: LeaseService,
    session_factory: sessionmaker,
    chunk_store: Optional[ChunkStore] = None,
    row_writer: Optional[RowWriter] = None,
) -> Pipeline:
    """
    Assemble a pipeline from settings and injected collaborators.

    Args:
        settings: Chunk size, lease timing and storage directories
        queue: Where stages put follow-up jobs
        publisher: Progress fan-out
        lease_service: Chunk leases
        session_factory: Sessions on the pipeline database
        chunk_store: Defaults to a local store under ``settings.chunk_dir``
        row_writer: Defaults to the store directory writer
    """
    uploads = UploadRepository(session_factory)
    working_area = WorkingArea(settings.working_dir)
    chunk_store = chunk_store or LocalChunkStore(settings.chunk_dir)

    pipeline = Pipeline(
        uploads=uploads,
        intake=IntakeStage(uploads, working_area, queue, publisher),
        decomposition=DecompositionStage(
            uploads,
            chunk_store,
            working_area,
            queue,
            publisher,
            chunk_size=settings.chunk_size,
        ),
        row_processing=RowProcessingStage(
            uploads,
            chunk_store,
            lease_service,
            row_writer or StoreRowWriter(),
            session_factory,
            publisher,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            heartbeat_seconds=settings.lock_heartbeat_seconds,
        ),
        query=UploadQueryService(uploads),
    )
    logger.debug(
        f"Pipeline built (chunk_size={settings.chunk_size}, lock_ttl={settings.lock_ttl_seconds}s)"
    )
    return pipeline
