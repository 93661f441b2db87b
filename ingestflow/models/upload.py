"""
Upload lifecycle models.
Status enums and read views over upload, chunk and error records.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class UploadStatus(str, Enum):
    """Lifecycle states of an upload."""

    PENDING = "pending"
    UPLOADED = "uploaded"
    CHUNKING = "chunking"
    CHUNKED = "chunked"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkStatus(str, Enum):
    """Lifecycle states of a chunk."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_MIME_TYPES = {
    "text/csv": "csv",
    "application/csv": "csv",
    "text/plain": "csv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "spreadsheet",
    "application/vnd.ms-excel": "spreadsheet",
}


def file_format_for(mime_type: str) -> Optional[str]:
    """Map a declared MIME type to a reader family ('csv' or 'spreadsheet')."""
    return ALLOWED_MIME_TYPES.get((mime_type or "").split(";")[0].strip().lower())


class UploadSummary(BaseModel):
    """Status and aggregate counters of one upload."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: str
    original_name: str
    mime_type: str
    size_bytes: int
    status: UploadStatus
    total_rows: Optional[int] = None
    processed_rows: int = 0
    error_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field  # type: ignore[misc]
    @property
    def percentage(self) -> float:
        """Share of rows that reached a terminal state, 0-100."""
        if not self.total_rows:
            return 0.0
        done = self.processed_rows + self.error_count
        return round(min(done, self.total_rows) * 100.0 / self.total_rows, 2)


class ChunkView(BaseModel):
    """One row-chunk of an upload."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    upload_id: str
    chunk_index: int
    status: ChunkStatus
    row_count: int
    error_count: int = 0


class ProcessingErrorView(BaseModel):
    """A row that failed validation or persistence."""

    model_config = ConfigDict(from_attributes=True)

    upload_id: str
    chunk_index: int
    row_number: int
    message: str
    raw_row: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
