"""
Database Package
SQLAlchemy ORM models, session factory and the upload record repository.
"""

from .models import Base, UploadRecord, ChunkRecord, ProcessingErrorRecord, Store
from .session import create_db_engine, get_engine, get_session_factory, make_session_factory, init_db
from .repository import UploadRepository, RowFailure

__all__ = [
    "Base",
    "UploadRecord",
    "ChunkRecord",
    "ProcessingErrorRecord",
    "Store",
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "init_db",
    "UploadRepository",
    "RowFailure",
]
