"""
File Readers
Turn a source file into a sequence of bounded row-chunks of header-mapped records.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol

import chardet
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def detect_csv_encoding(file_path: str) -> str:
    """
    Detect CSV file encoding using chardet.

    Args:
        file_path: Path to CSV file

    Returns:
        Detected encoding string
    """
    with open(file_path, "rb") as f:
        raw_data = f.read(10000)  # Read first 10KB

    result = chardet.detect(raw_data)
    encoding = result["encoding"]
    confidence = result["confidence"] or 0.0

    # ASCII is often a false positive for UTF-8 files
    # Since UTF-8 is a superset of ASCII, default to UTF-8
    if not encoding or encoding.lower() == "ascii" or confidence < 0.5:
        return "utf-8"

    logger.info(f"Detected encoding: {encoding} (confidence: {confidence:.2%})")
    return encoding


def clean_record(record: Dict[Any, Any]) -> Row:
    """
    Make a parsed record JSON-safe.

    Missing cells (NaN) are dropped, numpy scalars become Python values and
    dates become ISO strings. Present values, including empty strings, are
    kept verbatim.
    """
    cleaned: Row = {}
    for key, value in record.items():
        if value is None:
            continue
        if isinstance(value, float) and np.isnan(value):
            continue
        if value is pd.NaT:
            continue

        # Convert numpy types to Python types
        if isinstance(value, np.integer):
            value = int(value)
        elif isinstance(value, np.floating):
            value = float(value)
        elif isinstance(value, np.bool_):
            value = bool(value)
        elif isinstance(value, (pd.Timestamp, datetime, date)):
            value = value.isoformat()

        cleaned[str(key)] = value
    return cleaned


class ChunkReader(Protocol):
    """Yields lists of at most ``chunk_size`` rows in file order."""

    def iter_chunks(self, file_path: str, chunk_size: int) -> Iterator[List[Row]]: ...


class CSVChunkReader:
    """
    Streaming CSV reader.

    The first line is the header. Only one chunk of rows is held in memory
    at a time; chunk boundaries depend on row count alone.
    """

    def __init__(self, encoding: Optional[str] = None):
        self.encoding = encoding

    def iter_chunks(self, file_path: str, chunk_size: int) -> Iterator[List[Row]]:
        encoding = self.encoding or detect_csv_encoding(file_path)

        try:
            chunk_iterator = pd.read_csv(
                file_path,
                chunksize=chunk_size,
                dtype=str,  # Keep cells verbatim, no type inference
                keep_default_na=False,
                skip_blank_lines=True,
                encoding=encoding,
                on_bad_lines="error",
            )
        except pd.errors.EmptyDataError:
            logger.info(f"CSV file is empty: {file_path}")
            return

        with chunk_iterator:
            for chunk_df in chunk_iterator:
                if chunk_df.empty:
                    continue
                yield [clean_record(r) for r in chunk_df.to_dict("records")]


class SheetReader(Protocol):
    """Loads the first sheet of a workbook as header-mapped records."""

    def read_records(self, file_path: str) -> List[Row]: ...


class PandasSheetReader:
    """
    Default sheet reader: loads the whole first sheet into memory.

    openpyxl handles .xlsx and xlrd handles legacy .xls.
    """

    def read_records(self, file_path: str) -> List[Row]:
        df = pd.read_excel(file_path, sheet_name=0, dtype=object)
        logger.info(f"Loaded sheet with {len(df)} rows and {len(df.columns)} columns")
        records = [clean_record(r) for r in df.to_dict("records")]
        # Rows with every cell empty are not data rows
        return [r for r in records if r]


class SpreadsheetChunkReader:
    """Slices the records of a sheet reader into chunks."""

    def __init__(self, sheet_reader: Optional[SheetReader] = None):
        self.sheet_reader = sheet_reader or PandasSheetReader()

    def iter_chunks(self, file_path: str, chunk_size: int) -> Iterator[List[Row]]:
        records = self.sheet_reader.read_records(file_path)
        for start in range(0, len(records), chunk_size):
            yield records[start : start + chunk_size]
