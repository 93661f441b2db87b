#!/usr/bin/env python3
"""
File Ingestion Script
Submits a CSV or Excel file to the ingestion pipeline.

Usage:
    python -m ingestflow.scripts.ingest_file data/stores.csv

    # Run all three stages in this process (SQLite, no Redis or workers needed)
    python -m ingestflow.scripts.ingest_file data/stores.xlsx --inline --chunk-size 500
"""

import argparse
import logging
import mimetypes
import shutil
import sys
import uuid
from pathlib import Path

from ingestflow.config import get_settings
from ingestflow.errors import PipelineError

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def stage_upload(source: Path, upload_dir: Path) -> Path:
    """Copy the file to the upload area; intake moves it from there."""
    upload_dir.mkdir(parents=True, exist_ok=True)
    staged = upload_dir / f"{uuid.uuid4().hex}-{source.name}"
    shutil.copyfile(source, staged)
    return staged


def run_inline(settings, staged: Path, mime_type: str, original_name: str, size_bytes: int) -> int:
    """Run the whole pipeline in-process and print the summary."""
    from ingestflow.db.session import create_db_engine, init_db, make_session_factory
    from ingestflow.ingestion.pipeline import RETRYABLE_ERRORS, build_pipeline
    from ingestflow.services.lease_service import InMemoryLeaseService
    from ingestflow.services.progress_publisher import InMemoryProgressPublisher
    from ingestflow.tasks.queue import LocalJobQueue

    engine = create_db_engine(settings.database_url)
    init_db(engine)

    queue = LocalJobQueue(
        max_retries=settings.max_retries,
        retryable=RETRYABLE_ERRORS,
        backoff_seconds=settings.retry_backoff_seconds,
        backoff_max_seconds=settings.retry_backoff_max_seconds,
    )
    publisher = InMemoryProgressPublisher()
    pipeline = build_pipeline(
        settings,
        queue=queue,
        publisher=publisher,
        lease_service=InMemoryLeaseService(),
        session_factory=make_session_factory(engine),
    )

    upload_id = pipeline.intake.submit(str(staged), mime_type, original_name, size_bytes)
    publisher.subscribe(upload_id, lambda event: logger.info(f"[{event.type}] {event.data}"))

    runs = queue.drain(pipeline.dispatch, pipeline.on_retries_exhausted)
    summary = pipeline.query.get_upload(upload_id)

    # Display results
    logger.info("=" * 60)
    logger.info("INGESTION COMPLETE" if summary.status == "completed" else f"INGESTION {summary.status.upper()}")
    logger.info("=" * 60)
    logger.info(f"Upload id: {summary.id}")
    logger.info(f"Jobs run: {runs}")
    logger.info(f"Total rows: {summary.total_rows}")
    logger.info(f"Rows stored: {summary.processed_rows}")
    logger.info(f"Rows rejected: {summary.error_count}")
    logger.info(f"Progress: {summary.percentage:.2f}%")

    errors = pipeline.query.list_errors(upload_id)
    if errors:
        logger.warning(f"Errors encountered: {len(errors)}")
        for error in errors[:5]:  # Show first 5 errors
            logger.warning(f"  - chunk {error.chunk_index} row {error.row_number}: {error.message}")

    return 0 if summary.status == "completed" else 1


def main():
    """Main function to submit a file."""
    parser = argparse.ArgumentParser(description="Ingest a CSV or Excel file")
    parser.add_argument("file_path", type=str, help="Path to the CSV/XLS/XLSX file")
    parser.add_argument(
        "--mime-type",
        type=str,
        default=None,
        help="Declared MIME type (default: guessed from the file extension)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Rows per chunk for --inline runs; workers use CHUNK_SIZE (default: CHUNK_SIZE setting)",
    )
    parser.add_argument(
        "--inline",
        action="store_true",
        help="Run all stages in this process instead of queueing to Celery",
    )

    args = parser.parse_args()

    source = Path(args.file_path)
    if not source.exists():
        logger.error(f"File not found: {source}")
        sys.exit(1)

    mime_type = args.mime_type or mimetypes.guess_type(source.name)[0] or "application/octet-stream"

    settings = get_settings()
    if args.chunk_size is not None:
        settings = settings.model_copy(update={"chunk_size": args.chunk_size})

    logger.info(f"Submitting {source} ({mime_type}), chunk size {settings.chunk_size}")
    staged = stage_upload(source, Path(settings.upload_dir))

    try:
        if args.inline:
            sys.exit(run_inline(settings, staged, mime_type, source.name, source.stat().st_size))

        from ingestflow.tasks.pipeline import submit_upload

        upload_id = submit_upload(str(staged), mime_type, source.name, source.stat().st_size)
        logger.info(f"Upload {upload_id} queued")

    except PipelineError as e:
        logger.error(f"Ingestion failed: {e.message}")
        staged.unlink(missing_ok=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
