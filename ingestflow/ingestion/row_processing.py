"""
Row-Processing Stage
Validates and persists the rows of one chunk under an exclusive lease.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from ..db.repository import RowFailure, UploadRepository
from ..errors import (
    ChunkArtifactCorruptError,
    ChunkArtifactMissingError,
    LeaseServiceError,
    NonRetryableError,
    PipelineError,
    RowRejectedError,
)
from ..models.events import EventType
from ..models.jobs import RowProcessingJob
from ..models.upload import ChunkStatus
from ..services.chunk_store import ChunkStore
from ..services.lease_service import Lease, LeaseService, chunk_lease_key
from ..services.progress_publisher import ProgressPublisher
from .decomposition import publish_completed
from .row_writer import RowWriter

logger = logging.getLogger(__name__)


@dataclass
class ChunkOutcome:
    """Result of one row-processing invocation."""

    status: str  # completed, skipped
    upload_id: str
    chunk_index: int
    processed_rows: int = 0
    error_count: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RowProcessingStage:
    """
    Processes one chunk.

    A lease on ``(upload_id, chunk_index)`` keeps duplicate deliveries from
    running side by side; the chunk's pending -> completed transition keeps
    a delivery that arrives after the lease expired from applying the
    counters a second time.
    """

    def __init__(
        self,
        uploads: UploadRepository,
        chunk_store: ChunkStore,
        lease_service: LeaseService,
        row_writer: RowWriter,
        session_factory: sessionmaker,
        publisher: ProgressPublisher,
        lock_ttl_seconds: float = 30,
        heartbeat_seconds: float = 10,
    ):
        self.uploads = uploads
        self.chunk_store = chunk_store
        self.lease_service = lease_service
        self.row_writer = row_writer
        self.Session = session_factory
        self.publisher = publisher
        self.lock_ttl_seconds = lock_ttl_seconds
        self.heartbeat_seconds = heartbeat_seconds

    def run(self, job: RowProcessingJob) -> ChunkOutcome:
        """
        Process a chunk if no other worker is on it.

        Returns:
            ChunkOutcome with status completed or skipped

        Raises:
            ChunkArtifactMissingError: the payload is gone (permanent)
            ChunkArtifactCorruptError: the payload cannot be decoded (permanent)
            NonRetryableError: no chunk record for the job (permanent)
            LeaseServiceError: the lease backend failed or the lease was lost
            TransientInfrastructureError: the destination store is unavailable
        """
        upload_id, chunk_index = job.upload_id, job.chunk_index
        lease = self.lease_service.acquire(
            chunk_lease_key(upload_id, chunk_index), self.lock_ttl_seconds
        )
        if lease is None:
            logger.info(f"Chunk {chunk_index} of upload {upload_id} is already being processed, skipping")
            return ChunkOutcome(
                status="skipped", upload_id=upload_id, chunk_index=chunk_index, reason="already_processing"
            )

        try:
            with self.lease_service.keep_alive(lease, self.heartbeat_seconds) as heartbeat:
                return self._process(job, lease, heartbeat)
        finally:
            self.lease_service.release(lease)

    def _process(self, job: RowProcessingJob, lease: Lease, heartbeat) -> ChunkOutcome:
        upload_id, chunk_index = job.upload_id, job.chunk_index

        chunk = self.uploads.get_chunk(upload_id, chunk_index)
        if chunk is None:
            message = f"Unknown chunk {chunk_index} for upload {upload_id}"
            logger.error(message)
            self.publisher.publish(upload_id, EventType.ERROR, {"message": message, "chunkIndex": chunk_index})
            raise NonRetryableError(message, details={"upload_id": upload_id, "chunk_index": chunk_index})
        if chunk.status != ChunkStatus.PENDING.value:
            self.chunk_store.delete(job.chunk_path)
            logger.info(f"Chunk {chunk_index} of upload {upload_id} already {chunk.status}, skipping")
            return ChunkOutcome(
                status="skipped", upload_id=upload_id, chunk_index=chunk_index, reason="already_completed"
            )

        try:
            rows = self.chunk_store.get(job.chunk_path)
        except (ChunkArtifactMissingError, ChunkArtifactCorruptError) as e:
            logger.error(f"Chunk {chunk_index} of upload {upload_id}: {e.message}")
            self._fail_chunk(job, e.message)
            raise

        logger.info(f"Processing chunk {chunk_index} of upload {upload_id} ({len(rows)} rows)")

        processed = 0
        failures: List[RowFailure] = []
        with self.Session() as session:
            for row_number, row in enumerate(rows, start=1):
                try:
                    self.row_writer.write(session, upload_id, chunk_index, row_number, row)
                    processed += 1
                except RowRejectedError as e:
                    logger.warning(f"Row {row_number} of chunk {chunk_index} rejected: {e.message[:200]}")
                    failures.append(
                        RowFailure(
                            row_number=row_number,
                            message=e.message,
                            raw_row=row if isinstance(row, dict) else {"value": row},
                        )
                    )

        if heartbeat.lost:
            raise LeaseServiceError(
                f"Lease lost while processing chunk {chunk_index} of upload {upload_id}",
                details={"key": lease.key},
            )

        applied = self.uploads.complete_chunk(upload_id, chunk_index, processed, failures)
        self.chunk_store.delete(job.chunk_path)
        if not applied:
            return ChunkOutcome(
                status="skipped", upload_id=upload_id, chunk_index=chunk_index, reason="already_completed"
            )

        upload = self.uploads.get_upload(upload_id)
        self.publisher.publish(
            upload_id,
            EventType.PROCESSING_PROGRESS,
            {
                "chunkIndex": chunk_index,
                "chunkProcessedRows": processed,
                "chunkErrorCount": len(failures),
                "processedRows": upload.processed_rows if upload else processed,
                "errorCount": upload.error_count if upload else len(failures),
                "totalRows": upload.total_rows if upload else None,
            },
        )
        logger.info(
            f"Chunk {chunk_index} of upload {upload_id} done: {processed} rows stored, {len(failures)} errors"
        )

        if self.uploads.try_complete_upload(upload_id):
            publish_completed(self.uploads, self.publisher, upload_id)

        return ChunkOutcome(
            status="completed",
            upload_id=upload_id,
            chunk_index=chunk_index,
            processed_rows=processed,
            error_count=len(failures),
        )

    def _fail_chunk(self, job: RowProcessingJob, message: str) -> None:
        self.uploads.fail_chunk(job.upload_id, job.chunk_index)
        self.chunk_store.delete(job.chunk_path)
        self.publisher.publish(
            job.upload_id, EventType.ERROR, {"message": message, "chunkIndex": job.chunk_index}
        )
        if self.uploads.try_complete_upload(job.upload_id):
            publish_completed(self.uploads, self.publisher, job.upload_id)

    def abandon(self, job: RowProcessingJob, error: Exception) -> None:
        """Give up on a chunk whose retries are exhausted."""
        logger.error(f"Chunk {job.chunk_index} of upload {job.upload_id} abandoned: {error}")
        message = error.message if isinstance(error, PipelineError) else str(error)
        self._fail_chunk(job, message)
