"""
Data Models Package
Pydantic models for pipeline records, rows, jobs and progress events.
"""

from .upload import (
    UploadStatus,
    ChunkStatus,
    UploadSummary,
    ChunkView,
    ProcessingErrorView,
    file_format_for,
)
from .store import StoreRow
from .jobs import IntakeJob, DecompositionJob, RowProcessingJob, Job, parse_job
from .events import EventType, ProgressEvent, SubscribeMessage

__all__ = [
    "UploadStatus",
    "ChunkStatus",
    "UploadSummary",
    "ChunkView",
    "ProcessingErrorView",
    "file_format_for",
    "StoreRow",
    "IntakeJob",
    "DecompositionJob",
    "RowProcessingJob",
    "Job",
    "parse_job",
    "EventType",
    "ProgressEvent",
    "SubscribeMessage",
]
