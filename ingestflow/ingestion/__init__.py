"""
Ingestion Pipeline
Readers, row writer and the intake, decomposition and row-processing stages.
"""

from .decomposition import DecompositionStage
from .intake import IntakeStage
from .pipeline import RETRYABLE_ERRORS, Pipeline, build_pipeline
from .readers import CSVChunkReader, PandasSheetReader, SpreadsheetChunkReader
from .row_processing import ChunkOutcome, RowProcessingStage
from .row_writer import RowWriter, StoreRowWriter

__all__ = [
    "ChunkOutcome",
    "CSVChunkReader",
    "DecompositionStage",
    "IntakeStage",
    "PandasSheetReader",
    "Pipeline",
    "RETRYABLE_ERRORS",
    "RowProcessingStage",
    "RowWriter",
    "SpreadsheetChunkReader",
    "StoreRowWriter",
    "build_pipeline",
]
