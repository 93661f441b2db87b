"""
SQLAlchemy ORM Models
Database table definitions for pipeline state and the destination store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadRecord(Base):
    """
    Upload model.

    One row per ingested file. Counters are only ever changed through
    atomic ``col = col + n`` updates.
    """
    __tablename__ = 'file_uploads'

    id = Column(String(36), primary_key=True, default=_new_id)
    original_name = Column(String(512), nullable=False)
    mime_type = Column(String(255), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default='pending', index=True,
                    comment='pending, uploaded, chunking, chunked, processing, completed, failed')
    total_rows = Column(Integer, nullable=True,
                        comment='Set once decomposition finishes')
    processed_rows = Column(Integer, nullable=False, default=0, server_default='0')
    error_count = Column(Integer, nullable=False, default=0, server_default='0')

    # Timestamps
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
                        server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow,
                        server_default=func.now(), onupdate=_utcnow)

    # Relationships
    chunks = relationship("ChunkRecord", back_populates="upload", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_file_uploads_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<UploadRecord(id={self.id}, status={self.status})>"


class ChunkRecord(Base):
    """
    Chunk model.

    One row per row-chunk; indices are contiguous from 0 for an upload.
    """
    __tablename__ = 'file_chunks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(36), ForeignKey('file_uploads.id', ondelete='CASCADE'),
                       nullable=False)
    chunk_index = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default='pending',
                    comment='pending, completed, failed')
    row_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0, server_default='0')

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(),
                        onupdate=func.now())

    upload = relationship("UploadRecord", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint('upload_id', 'chunk_index', name='uq_file_chunks_upload_chunk'),
    )

    def __repr__(self):
        return f"<ChunkRecord(upload_id={self.upload_id}, chunk_index={self.chunk_index})>"


class ProcessingErrorRecord(Base):
    """
    Row failure audit trail.

    Append-only: created by row-processing, never updated or deleted.
    """
    __tablename__ = 'processing_errors'

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(36), ForeignKey('file_uploads.id', ondelete='CASCADE'),
                       nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    row_number = Column(Integer, nullable=False, comment='1-based position within the chunk')
    message = Column(Text, nullable=False)
    raw_row = Column(JSON, nullable=False, comment='Offending row, verbatim')
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('upload_id', 'chunk_index', 'row_number',
                         name='uq_processing_errors_position'),
    )


class Store(Base):
    """
    Destination store directory entry.

    ``(upload_id, chunk_index, row_number)`` identifies the source row so
    that a reprocessed chunk never writes the same row twice.
    """
    __tablename__ = 'stores'

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_name = Column(String(255), nullable=False)
    store_address = Column(String(500), nullable=True)
    city_name = Column(String(255), nullable=True)
    region_name = Column(String(255), nullable=True)
    retailer_name = Column(String(255), nullable=True)
    store_type = Column(String(100), nullable=True)
    store_longitude = Column(Numeric(10, 6), nullable=True)
    store_latitude = Column(Numeric(10, 6), nullable=True)

    # Provenance
    upload_id = Column(String(36), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    row_number = Column(Integer, nullable=False)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('upload_id', 'chunk_index', 'row_number', name='uq_stores_source_row'),
        Index('idx_stores_city', 'city_name'),
    )

    def __repr__(self):
        return f"<Store(id={self.id}, store_name={self.store_name})>"
