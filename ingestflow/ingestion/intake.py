"""
Intake Stage
Takes an uploaded file off ephemeral storage and hands it to decomposition.
"""

import logging
from typing import Any, Dict

from ..db.repository import UploadRepository
from ..errors import IntakeError
from ..models.events import EventType
from ..models.jobs import DecompositionJob, IntakeJob
from ..models.upload import UploadStatus, file_format_for
from ..services.progress_publisher import ProgressPublisher
from ..services.working_area import WorkingArea
from ..tasks.queue import JobQueue

logger = logging.getLogger(__name__)


class IntakeStage:
    """
    Entry point of the pipeline.

    ``submit`` creates the upload record and queues intake; ``run`` is the
    intake job itself.
    """

    def __init__(
        self,
        uploads: UploadRepository,
        working_area: WorkingArea,
        queue: JobQueue,
        publisher: ProgressPublisher,
    ):
        self.uploads = uploads
        self.working_area = working_area
        self.queue = queue
        self.publisher = publisher

    def submit(self, file_path: str, mime_type: str, original_name: str, size_bytes: int) -> str:
        """
        Register a validated upload and queue it for intake.

        Args:
            file_path: Where the upload collaborator stored the file
            mime_type: Declared MIME type
            original_name: File name as uploaded
            size_bytes: File size

        Returns:
            The new upload id

        Raises:
            IntakeError: unsupported MIME type
        """
        if file_format_for(mime_type) is None:
            raise IntakeError(
                upload_id=None,
                message=f"Invalid file type {mime_type!r}. Only CSV and Excel files are allowed.",
                details={"mime_type": mime_type},
            )

        upload_id = self.uploads.create_upload(
            original_name=original_name, mime_type=mime_type, size_bytes=size_bytes
        )
        self.queue.enqueue(
            IntakeJob(
                upload_id=upload_id,
                file_path=str(file_path),
                mime_type=mime_type,
                original_name=original_name,
                size_bytes=size_bytes,
            )
        )
        logger.info(f"Upload {upload_id} ({original_name}, {size_bytes} bytes) queued for intake")
        return upload_id

    def run(self, job: IntakeJob) -> Dict[str, Any]:
        """
        Relocate the file to the working area and queue decomposition.

        Re-running for the same upload is harmless: the move is skipped when
        the working copy already exists, and once decomposition has taken
        the upload over a redelivered job returns ``skipped``.

        Raises:
            IntakeError: the source file is gone and there is no working copy
        """
        logger.info(f"Starting intake for upload {job.upload_id}")

        try:
            durable_path = self.working_area.relocate(job.upload_id, job.file_path)
        except FileNotFoundError:
            if self._handed_off(job.upload_id):
                # Redelivery after decomposition already consumed the working copy
                logger.info(f"Upload {job.upload_id} is past intake, skipping redelivered job")
                return {"status": "skipped", "reason": "already_handed_off"}

            message = f"File not found: {job.file_path}"
            logger.error(f"Intake failed for upload {job.upload_id}: {message}")
            self.uploads.mark_failed(job.upload_id)
            self.publisher.publish(job.upload_id, EventType.ERROR, {"message": message})
            raise IntakeError(upload_id=job.upload_id, message=message)

        self.uploads.transition_status(
            job.upload_id, [UploadStatus.PENDING], UploadStatus.UPLOADED
        )
        self.publisher.publish(
            job.upload_id,
            EventType.FILE_PROGRESS,
            {"status": UploadStatus.UPLOADED.value, "message": "File stored for processing."},
        )

        self.queue.enqueue(
            DecompositionJob(
                upload_id=job.upload_id, file_path=str(durable_path), mime_type=job.mime_type
            )
        )
        logger.info(f"Upload {job.upload_id} queued for chunking from {durable_path}")
        return {"status": UploadStatus.UPLOADED.value, "file_path": str(durable_path)}

    def _handed_off(self, upload_id: str) -> bool:
        """True once decomposition owns the upload (or it already ended)."""
        upload = self.uploads.get_upload(upload_id)
        if upload is None:
            return False
        return upload.total_rows is not None or upload.status not in (
            UploadStatus.PENDING.value,
            UploadStatus.UPLOADED.value,
        )

    def abandon(self, job: IntakeJob, error: Exception) -> None:
        """Give up on an intake job whose retries are exhausted."""
        if self._handed_off(job.upload_id):
            logger.warning(f"Intake for upload {job.upload_id} gave up after hand-off, leaving status as is: {error}")
            return
        logger.error(f"Intake for upload {job.upload_id} abandoned: {error}")
        self.working_area.remove(job.file_path)
        self.uploads.mark_failed(job.upload_id)
        self.publisher.publish(job.upload_id, EventType.ERROR, {"message": str(error)})
