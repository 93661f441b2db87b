"""
Upload Record Store
Persistence operations for uploads, chunks and row errors.

Counters on ``file_uploads`` are changed only through ``col = col + n``
statements so concurrent chunk completions never lose updates.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..models.upload import ChunkStatus, UploadStatus
from .models import ChunkRecord, ProcessingErrorRecord, UploadRecord

logger = logging.getLogger(__name__)


@dataclass
class RowFailure:
    """A row that could not be written, as collected by row-processing."""

    row_number: int
    message: str
    raw_row: Dict[str, Any] = field(default_factory=dict)


class UploadRepository:
    """Repository over the pipeline state tables."""

    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory

    # === UPLOADS ===

    def create_upload(
        self,
        original_name: str,
        mime_type: str,
        size_bytes: int,
        upload_id: Optional[str] = None,
    ) -> str:
        """Insert a new upload in status pending and return its id."""
        with self.Session() as session:
            record = UploadRecord(
                original_name=original_name,
                mime_type=mime_type,
                size_bytes=size_bytes,
                status=UploadStatus.PENDING.value,
                processed_rows=0,
                error_count=0,
            )
            if upload_id:
                record.id = upload_id
            session.add(record)
            session.commit()
            logger.info(f"Created upload {record.id} for {original_name}")
            return record.id

    def get_upload(self, upload_id: str) -> Optional[UploadRecord]:
        with self.Session() as session:
            return session.get(UploadRecord, upload_id)

    def list_uploads(self) -> List[UploadRecord]:
        """All uploads, newest first."""
        with self.Session() as session:
            query = select(UploadRecord).order_by(
                UploadRecord.created_at.desc(), UploadRecord.id.desc()
            )
            return list(session.execute(query).scalars().all())

    def transition_status(
        self, upload_id: str, from_statuses: Iterable[UploadStatus], to_status: UploadStatus
    ) -> bool:
        """
        Move an upload to ``to_status`` only if it is currently in one of ``from_statuses``.

        Returns:
            True if the row changed
        """
        allowed = [s.value for s in from_statuses]
        with self.Session() as session:
            result = session.execute(
                update(UploadRecord)
                .where(UploadRecord.id == upload_id, UploadRecord.status.in_(allowed))
                .values(status=to_status.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def mark_failed(self, upload_id: str) -> bool:
        """Mark an upload failed unless it already reached a terminal state."""
        changed = self.transition_status(
            upload_id,
            [
                UploadStatus.PENDING,
                UploadStatus.UPLOADED,
                UploadStatus.CHUNKING,
                UploadStatus.CHUNKED,
                UploadStatus.PROCESSING,
            ],
            UploadStatus.FAILED,
        )
        if changed:
            logger.warning(f"Upload {upload_id} marked failed")
        return changed

    def finalize_decomposition(self, upload_id: str, total_rows: int) -> None:
        """Record the final row count and move chunking -> chunked."""
        with self.Session() as session:
            session.execute(
                update(UploadRecord)
                .where(UploadRecord.id == upload_id)
                .values(total_rows=total_rows)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(UploadRecord)
                .where(
                    UploadRecord.id == upload_id,
                    UploadRecord.status == UploadStatus.CHUNKING.value,
                )
                .values(status=UploadStatus.CHUNKED.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def try_complete_upload(self, upload_id: str) -> bool:
        """
        Flip the upload to completed once every row reached a terminal state.

        Rows of permanently failed chunks count towards the total even though
        they are not in ``processed_rows``/``error_count``. The update is a
        single conditional statement, so exactly one caller sees True.
        """
        failed_chunk_rows = (
            select(func.coalesce(func.sum(ChunkRecord.row_count), 0))
            .where(
                ChunkRecord.upload_id == upload_id,
                ChunkRecord.status == ChunkStatus.FAILED.value,
            )
            .scalar_subquery()
        )
        with self.Session() as session:
            result = session.execute(
                update(UploadRecord)
                .where(
                    UploadRecord.id == upload_id,
                    UploadRecord.total_rows.is_not(None),
                    UploadRecord.status.not_in(
                        [UploadStatus.COMPLETED.value, UploadStatus.FAILED.value]
                    ),
                    UploadRecord.processed_rows + UploadRecord.error_count + failed_chunk_rows
                    >= UploadRecord.total_rows,
                )
                .values(status=UploadStatus.COMPLETED.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            completed = result.rowcount == 1

        if completed:
            logger.info(f"Upload {upload_id} completed")
        return completed

    # === CHUNKS ===

    def get_chunk(self, upload_id: str, chunk_index: int) -> Optional[ChunkRecord]:
        with self.Session() as session:
            query = select(ChunkRecord).where(
                ChunkRecord.upload_id == upload_id, ChunkRecord.chunk_index == chunk_index
            )
            return session.execute(query).scalars().first()

    def list_chunks(self, upload_id: str) -> List[ChunkRecord]:
        with self.Session() as session:
            query = (
                select(ChunkRecord)
                .where(ChunkRecord.upload_id == upload_id)
                .order_by(ChunkRecord.chunk_index)
            )
            return list(session.execute(query).scalars().all())

    def record_chunk(self, upload_id: str, chunk_index: int, row_count: int) -> bool:
        """
        Insert chunk metadata in status pending.

        Returns:
            False if the chunk was already recorded (re-run decomposition)
        """
        with self.Session() as session:
            session.add(
                ChunkRecord(
                    upload_id=upload_id,
                    chunk_index=chunk_index,
                    row_count=row_count,
                    status=ChunkStatus.PENDING.value,
                    error_count=0,
                )
            )
            try:
                session.commit()
                return True
            except IntegrityError:
                session.rollback()
                logger.info(f"Chunk {chunk_index} of upload {upload_id} already recorded")
                return False

    def complete_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        processed_rows: int,
        failures: List[RowFailure],
    ) -> bool:
        """
        Apply a finished chunk: pending -> completed, error records, counters.

        Everything happens in one transaction guarded by the chunk's
        pending -> completed transition, so a redelivered chunk is applied
        at most once.

        Returns:
            True if this call applied the chunk
        """
        with self.Session() as session:
            result = session.execute(
                update(ChunkRecord)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.chunk_index == chunk_index,
                    ChunkRecord.status == ChunkStatus.PENDING.value,
                )
                .values(status=ChunkStatus.COMPLETED.value, error_count=len(failures))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info(f"Chunk {chunk_index} of upload {upload_id} was already applied")
                return False

            self._add_failures(session, upload_id, chunk_index, failures)

            session.execute(
                update(UploadRecord)
                .where(UploadRecord.id == upload_id)
                .values(
                    processed_rows=UploadRecord.processed_rows + processed_rows,
                    error_count=UploadRecord.error_count + len(failures),
                )
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(UploadRecord)
                .where(
                    UploadRecord.id == upload_id,
                    UploadRecord.status == UploadStatus.CHUNKED.value,
                )
                .values(status=UploadStatus.PROCESSING.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        logger.info(
            f"Atomically incremented processed_rows/error_count for {upload_id} "
            f"by {processed_rows}/{len(failures)} (chunk {chunk_index})"
        )
        return True

    def fail_chunk(self, upload_id: str, chunk_index: int) -> bool:
        """Move a pending chunk to failed. Counters are left untouched."""
        with self.Session() as session:
            result = session.execute(
                update(ChunkRecord)
                .where(
                    ChunkRecord.upload_id == upload_id,
                    ChunkRecord.chunk_index == chunk_index,
                    ChunkRecord.status == ChunkStatus.PENDING.value,
                )
                .values(status=ChunkStatus.FAILED.value)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    # === ERRORS ===

    def list_errors(self, upload_id: str) -> List[ProcessingErrorRecord]:
        with self.Session() as session:
            query = (
                select(ProcessingErrorRecord)
                .where(ProcessingErrorRecord.upload_id == upload_id)
                .order_by(ProcessingErrorRecord.chunk_index, ProcessingErrorRecord.row_number)
            )
            return list(session.execute(query).scalars().all())

    def _add_failures(
        self, session: Session, upload_id: str, chunk_index: int, failures: List[RowFailure]
    ) -> None:
        if not failures:
            return

        existing = set(
            session.execute(
                select(ProcessingErrorRecord.row_number).where(
                    ProcessingErrorRecord.upload_id == upload_id,
                    ProcessingErrorRecord.chunk_index == chunk_index,
                )
            ).scalars()
        )
        for failure in failures:
            if failure.row_number in existing:
                continue
            session.add(
                ProcessingErrorRecord(
                    upload_id=upload_id,
                    chunk_index=chunk_index,
                    row_number=failure.row_number,
                    message=failure.message,
                    raw_row=failure.raw_row,
                )
            )
