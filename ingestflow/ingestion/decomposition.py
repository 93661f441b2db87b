"""
Decomposition Stage
Streams a durable source file into fixed-size row-chunks and queues one
row-processing job per chunk.
"""

import logging
from typing import Any, Dict, Optional

from ..db.repository import UploadRepository
from ..errors import DecompositionError, PipelineError, UnsupportedFileTypeError
from ..models.events import EventType
from ..models.jobs import DecompositionJob, RowProcessingJob
from ..models.upload import ChunkStatus, UploadStatus, file_format_for
from ..services.chunk_store import ChunkStore
from ..services.progress_publisher import ProgressPublisher
from ..services.working_area import WorkingArea
from ..tasks.queue import JobQueue
from .readers import ChunkReader, CSVChunkReader, SpreadsheetChunkReader

logger = logging.getLogger(__name__)


class DecompositionStage:
    """
    Splits one upload into chunks.

    Each chunk is written to the chunk store and recorded as pending before
    its row-processing job is queued, so a job never points at a payload
    that does not exist. A re-run after a crash rewrites and re-queues only
    the chunks that are still pending.
    """

    def __init__(
        self,
        uploads: UploadRepository,
        chunk_store: ChunkStore,
        working_area: WorkingArea,
        queue: JobQueue,
        publisher: ProgressPublisher,
        chunk_size: int = 1000,
        csv_reader: Optional[ChunkReader] = None,
        spreadsheet_reader: Optional[ChunkReader] = None,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

        self.uploads = uploads
        self.chunk_store = chunk_store
        self.working_area = working_area
        self.queue = queue
        self.publisher = publisher
        self.chunk_size = chunk_size
        self.csv_reader = csv_reader or CSVChunkReader()
        self.spreadsheet_reader = spreadsheet_reader or SpreadsheetChunkReader()

    def reader_for(self, upload_id: str, mime_type: str) -> ChunkReader:
        file_format = file_format_for(mime_type)
        if file_format == "csv":
            return self.csv_reader
        elif file_format == "spreadsheet":
            return self.spreadsheet_reader
        raise UnsupportedFileTypeError(upload_id, mime_type)

    def run(self, job: DecompositionJob) -> Dict[str, Any]:
        """
        Decompose one file.

        Args:
            job: Decomposition envelope with the durable file path

        Returns:
            Dictionary with totals (status, total_rows, total_chunks)

        Raises:
            DecompositionError: the file is missing, unreadable or malformed
            UnsupportedFileTypeError: no reader for the MIME type (permanent)
        """
        upload_id = job.upload_id
        logger.info(f"Starting decomposition for upload {upload_id} ({job.mime_type})")

        self.uploads.transition_status(
            upload_id,
            [UploadStatus.PENDING, UploadStatus.UPLOADED, UploadStatus.CHUNKING],
            UploadStatus.CHUNKING,
        )
        self.publisher.publish(
            upload_id,
            EventType.FILE_PROGRESS,
            {"status": UploadStatus.CHUNKING.value, "message": "Starting file processing..."},
        )

        if not self.working_area.exists(job.file_path):
            upload = self.uploads.get_upload(upload_id)
            if upload is not None and upload.total_rows is not None:
                # An earlier delivery finished and removed the source
                logger.info(f"Upload {upload_id} already decomposed, skipping")
                return {"status": "skipped", "total_rows": upload.total_rows}

            message = f"File not found: {job.file_path}"
            self.publisher.publish(upload_id, EventType.ERROR, {"message": message})
            raise DecompositionError(upload_id=upload_id, message=message)

        try:
            reader = self.reader_for(upload_id, job.mime_type)
        except UnsupportedFileTypeError as e:
            self.abandon(job, e)
            raise

        total_rows = 0
        total_chunks = 0
        try:
            for chunk_index, rows in enumerate(reader.iter_chunks(job.file_path, self.chunk_size)):
                total_rows += len(rows)
                total_chunks = chunk_index + 1
                self._emit_chunk(upload_id, chunk_index, rows)
                self.publisher.publish(
                    upload_id,
                    EventType.CHUNK_PROGRESS,
                    {
                        "chunkIndex": chunk_index,
                        "rowCount": len(rows),
                        "totalChunks": total_chunks,
                        "totalRows": total_rows,
                    },
                )
        except PipelineError as e:
            logger.error(f"Decomposition failed for upload {upload_id}: {e}", exc_info=True)
            self.publisher.publish(upload_id, EventType.ERROR, {"message": e.message})
            raise
        except Exception as e:
            logger.error(f"Decomposition failed for upload {upload_id}: {e}", exc_info=True)
            self.publisher.publish(upload_id, EventType.ERROR, {"message": str(e)})
            raise DecompositionError(
                upload_id=upload_id,
                message=f"Could not read file: {e}",
                details={"chunks_emitted": total_chunks, "rows_read": total_rows},
            ) from e

        self.uploads.finalize_decomposition(upload_id, total_rows)
        self.working_area.remove(job.file_path)
        logger.info(
            f"Decomposed upload {upload_id}: {total_rows} rows in {total_chunks} chunks"
        )
        self.publisher.publish(
            upload_id,
            EventType.FILE_PROGRESS,
            {
                "status": UploadStatus.CHUNKED.value,
                "totalRows": total_rows,
                "totalChunks": total_chunks,
            },
        )

        # Covers empty files and chunks that finished before the total was known
        if self.uploads.try_complete_upload(upload_id):
            publish_completed(self.uploads, self.publisher, upload_id)

        return {
            "status": UploadStatus.CHUNKED.value,
            "total_rows": total_rows,
            "total_chunks": total_chunks,
        }

    def _emit_chunk(self, upload_id: str, chunk_index: int, rows) -> None:
        existing = self.uploads.get_chunk(upload_id, chunk_index)
        if existing is not None and existing.status != ChunkStatus.PENDING.value:
            logger.info(
                f"Chunk {chunk_index} of upload {upload_id} is already {existing.status}, not re-queued"
            )
            return

        artifact_ref = self.chunk_store.put(upload_id, chunk_index, rows)
        if existing is None:
            self.uploads.record_chunk(upload_id, chunk_index, len(rows))
        self.queue.enqueue(
            RowProcessingJob(upload_id=upload_id, chunk_index=chunk_index, chunk_path=artifact_ref)
        )
        logger.debug(f"Queued chunk {chunk_index} of upload {upload_id} ({len(rows)} rows)")

    def abandon(self, job: DecompositionJob, error: Exception) -> None:
        """Give up on a decomposition job whose retries are exhausted."""
        logger.error(f"Decomposition for upload {job.upload_id} abandoned: {error}")
        self.uploads.mark_failed(job.upload_id)
        self.working_area.remove(job.file_path)
        message = error.message if isinstance(error, PipelineError) else str(error)
        self.publisher.publish(job.upload_id, EventType.ERROR, {"message": message})


def publish_completed(uploads: UploadRepository, publisher: ProgressPublisher, upload_id: str) -> None:
    """Announce the terminal completed state with the final counters."""
    upload = uploads.get_upload(upload_id)
    data: Dict[str, Any] = {"status": UploadStatus.COMPLETED.value}
    if upload is not None:
        data.update(
            {
                "totalRows": upload.total_rows,
                "processedRows": upload.processed_rows,
                "errorCount": upload.error_count,
            }
        )
    publisher.publish(upload_id, EventType.FILE_PROGRESS, data)
