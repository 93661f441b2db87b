"""
Chunk Store
Durable, addressable storage for serialized row-chunks.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Union

from ..errors import ChunkArtifactCorruptError, ChunkArtifactMissingError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class ChunkStore(ABC):
    """
    Storage for chunk artifacts.

    ``put`` returns an opaque artifact reference which is what travels in the
    row-processing job; ``get`` and ``delete`` only ever receive such references.
    """

    @abstractmethod
    def put(self, upload_id: str, chunk_index: int, rows: List[Row]) -> str:
        """Persist a chunk and return its artifact reference."""

    @abstractmethod
    def get(self, artifact_ref: str) -> List[Row]:
        """
        Load a chunk.

        Raises:
            ChunkArtifactMissingError: the chunk is gone
            ChunkArtifactCorruptError: the payload does not decode to a list of rows
        """

    @abstractmethod
    def delete(self, artifact_ref: str) -> bool:
        """Delete a chunk. Returns False if there was nothing to delete."""

    @abstractmethod
    def exists(self, artifact_ref: str) -> bool:
        """Check whether a chunk is still stored."""


class LocalChunkStore(ChunkStore):
    """
    Chunk store backed by JSON files in a local directory.

    Files are named ``<upload_id>-chunk-<index>.json`` and written through a
    temporary file plus ``os.replace`` so a reader never sees a partial chunk.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, upload_id: str, chunk_index: int) -> Path:
        return self.base_dir / f"{upload_id}-chunk-{chunk_index}.json"

    def put(self, upload_id: str, chunk_index: int, rows: List[Row]) -> str:
        target = self.path_for(upload_id, chunk_index)
        fd, tmp_name = tempfile.mkstemp(dir=self.base_dir, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(rows, fh, ensure_ascii=False, default=str)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.debug(f"Saved chunk {chunk_index} ({len(rows)} rows) to {target}")
        return str(target)

    def get(self, artifact_ref: str) -> List[Row]:
        try:
            with open(artifact_ref, "r", encoding="utf-8") as fh:
                rows = json.load(fh)
        except FileNotFoundError:
            raise ChunkArtifactMissingError(artifact_ref)
        except ValueError as e:
            # Covers JSONDecodeError and UnicodeDecodeError
            raise ChunkArtifactCorruptError(artifact_ref, str(e)) from e

        if not isinstance(rows, list):
            raise ChunkArtifactCorruptError(artifact_ref, f"expected a list of rows, got {type(rows).__name__}")
        return rows

    def delete(self, artifact_ref: str) -> bool:
        try:
            os.unlink(artifact_ref)
            return True
        except FileNotFoundError:
            return False

    def exists(self, artifact_ref: str) -> bool:
        return os.path.exists(artifact_ref)
