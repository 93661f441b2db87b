"""
Destination Row Writer
Validates one row and writes it to the stores table.
"""

import logging
from typing import Any, Dict, Protocol

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from ..db.models import Store
from ..errors import RowRejectedError, TransientInfrastructureError
from ..models.store import StoreRow

logger = logging.getLogger(__name__)


def format_validation_error(error: ValidationError) -> str:
    """Flatten pydantic errors into one readable line."""
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "row"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


class RowWriter(Protocol):
    """Writes one row in its own transaction."""

    def write(
        self, session: Session, upload_id: str, chunk_index: int, row_number: int, row: Dict[str, Any]
    ) -> bool:
        """
        Returns:
            True if the row was inserted, False if it was already present

        Raises:
            RowRejectedError: the row is invalid or violates a constraint
            TransientInfrastructureError: the destination store is unavailable
        """
        ...


class StoreRowWriter:
    """
    Writes validated store rows, one commit per row.

    The source position ``(upload_id, chunk_index, row_number)`` is stored
    with each row, so writing a chunk a second time inserts nothing new.
    """

    def write(
        self, session: Session, upload_id: str, chunk_index: int, row_number: int, row: Dict[str, Any]
    ) -> bool:
        try:
            store_row = StoreRow.model_validate(row)
        except ValidationError as e:
            raise RowRejectedError(format_validation_error(e)) from e

        try:
            existing = session.execute(
                select(Store.id).where(
                    Store.upload_id == upload_id,
                    Store.chunk_index == chunk_index,
                    Store.row_number == row_number,
                )
            ).first()
            if existing:
                return False

            session.add(
                Store(
                    **store_row.to_columns(),
                    upload_id=upload_id,
                    chunk_index=chunk_index,
                    row_number=row_number,
                )
            )
            # Commit after each successful row
            session.commit()
            return True

        except (IntegrityError, DataError) as e:
            session.rollback()
            raise RowRejectedError(f"Database rejected row: {str(e.orig)[:200]}") from e
        except (OperationalError, InterfaceError) as e:
            session.rollback()
            raise TransientInfrastructureError(
                f"Destination store unavailable: {str(e.orig)[:200]}"
            ) from e
