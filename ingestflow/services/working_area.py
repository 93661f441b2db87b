"""
Working Area
Durable location for source files between intake and decomposition.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


class WorkingArea:
    """Holds one durable working copy of the source file per upload."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def durable_path(self, upload_id: str, source_path: Union[str, Path]) -> Path:
        return self.base_dir / f"{upload_id}-{Path(source_path).name}"

    def relocate(self, upload_id: str, source_path: Union[str, Path]) -> Path:
        """
        Move an uploaded file into the working area.

        Safe to call again for the same upload: when the destination already
        exists the move is skipped and any leftover source copy is removed.

        Raises:
            FileNotFoundError: neither the source nor a previous copy exists
        """
        source = Path(source_path)
        destination = self.durable_path(upload_id, source)

        if destination.exists():
            if source.exists() and source.resolve() != destination.resolve():
                source.unlink()
            logger.info(f"Working copy already present for upload {upload_id}: {destination}")
            return destination

        if not source.exists():
            raise FileNotFoundError(f"File not found: {source}")

        # shutil.move falls back to copy + delete across filesystems
        tmp_destination = destination.with_name(f".{destination.name}.partial")
        shutil.move(str(source), str(tmp_destination))
        os.replace(tmp_destination, destination)
        logger.info(f"Moved {source} to {destination}")
        return destination

    def remove(self, path: Union[str, Path]) -> bool:
        """Delete a file if present."""
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False

    def exists(self, path: Union[str, Path]) -> bool:
        return Path(path).exists()
