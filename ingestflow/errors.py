"""
Pipeline Errors
Exception taxonomy shared by the ingestion stages and the job queue.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NonRetryableError(PipelineError):
    """
    Failure that no amount of retrying can fix.

    The job queue discards jobs that raise this instead of backing off.
    """


class IntakeError(NonRetryableError):
    """Exception raised when an uploaded file cannot be taken in."""

    def __init__(self, upload_id: Optional[str], message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details={"upload_id": upload_id, **(details or {})})
        self.upload_id = upload_id


class ChunkArtifactMissingError(NonRetryableError):
    """Exception raised when a chunk payload is gone before it was processed."""

    def __init__(self, artifact_ref: str):
        super().__init__(
            message=f"Chunk file not found: {artifact_ref}",
            details={"artifact_ref": artifact_ref},
        )
        self.artifact_ref = artifact_ref


class ChunkArtifactCorruptError(NonRetryableError):
    """Exception raised when a chunk payload cannot be decoded into rows."""

    def __init__(self, artifact_ref: str, reason: str):
        super().__init__(
            message=f"Chunk file is unreadable: {artifact_ref} ({reason})",
            details={"artifact_ref": artifact_ref, "reason": reason},
        )
        self.artifact_ref = artifact_ref


class DecompositionError(PipelineError):
    """Exception raised for unreadable or malformed source files."""

    def __init__(self, upload_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details={"upload_id": upload_id, **(details or {})})
        self.upload_id = upload_id


class UnsupportedFileTypeError(NonRetryableError):
    """Exception raised when no reader handles the declared MIME type."""

    def __init__(self, upload_id: str, mime_type: str):
        super().__init__(
            message=f"Unsupported file type: {mime_type}",
            details={"upload_id": upload_id, "mime_type": mime_type},
        )
        self.upload_id = upload_id
        self.mime_type = mime_type


class TransientInfrastructureError(PipelineError):
    """Exception raised when a backing service is temporarily unavailable."""


class LeaseServiceError(TransientInfrastructureError):
    """Exception raised when the lease backend cannot be reached or a lease is lost."""


class RowRejectedError(PipelineError):
    """Exception raised when a single row fails validation or persistence."""


class UploadNotFoundError(PipelineError):
    """Exception raised when an upload id is unknown."""

    def __init__(self, upload_id: str):
        super().__init__(message=f"Upload not found: {upload_id}", details={"id": upload_id})
        self.upload_id = upload_id
