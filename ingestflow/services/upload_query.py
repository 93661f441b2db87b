"""
Upload Query Service
Read-side surface consumed by the HTTP layer: status, errors, history.
"""

from typing import List

from ..db.repository import UploadRepository
from ..errors import UploadNotFoundError
from ..models.upload import ChunkView, ProcessingErrorView, UploadSummary


class UploadQueryService:
    """Status and summary queries over the upload record store."""

    def __init__(self, uploads: UploadRepository):
        self.uploads = uploads

    def get_upload(self, upload_id: str) -> UploadSummary:
        """
        Fetch one upload with its counters and completion percentage.

        Raises:
            UploadNotFoundError: unknown id
        """
        record = self.uploads.get_upload(upload_id)
        if record is None:
            raise UploadNotFoundError(upload_id)
        return UploadSummary.model_validate(record)

    def list_uploads(self) -> List[UploadSummary]:
        """All uploads, newest first."""
        return [UploadSummary.model_validate(r) for r in self.uploads.list_uploads()]

    def list_errors(self, upload_id: str) -> List[ProcessingErrorView]:
        """Row errors of an upload ordered by chunk, then row."""
        return [ProcessingErrorView.model_validate(r) for r in self.uploads.list_errors(upload_id)]

    def list_chunks(self, upload_id: str) -> List[ChunkView]:
        return [ChunkView.model_validate(r) for r in self.uploads.list_chunks(upload_id)]
