"""
ingestflow
Chunked CSV/Excel ingestion pipeline with live progress reporting.
"""

__version__ = "0.1.0"
