"""
Tests for the row-processing stage.
"""

import threading
import time

import pytest
from sqlalchemy import func, select

from ingestflow.db.models import Store
from ingestflow.errors import (
    ChunkArtifactCorruptError,
    ChunkArtifactMissingError,
    LeaseServiceError,
    NonRetryableError,
    TransientInfrastructureError,
)
from ingestflow.ingestion.row_processing import RowProcessingStage
from ingestflow.ingestion.row_writer import StoreRowWriter
from ingestflow.models.jobs import RowProcessingJob
from ingestflow.models.upload import ChunkStatus, UploadStatus
from ingestflow.services.lease_service import InMemoryLeaseService, chunk_lease_key


@pytest.fixture
def make_chunk(uploads, chunk_store):
    """Create an upload with one recorded chunk and return its job."""

    def _make(rows, chunk_index=0, total_rows=None, upload_id=None):
        if upload_id is None:
            upload_id = uploads.create_upload("stores.csv", "text/csv", 100)
        ref = chunk_store.put(upload_id, chunk_index, rows)
        uploads.record_chunk(upload_id, chunk_index, len(rows))
        if total_rows is not None:
            uploads.finalize_decomposition(upload_id, total_rows)
        return RowProcessingJob(upload_id=upload_id, chunk_index=chunk_index, chunk_path=ref)

    return _make


def _stage(pipeline, **overrides):
    stage = pipeline.row_processing
    params = dict(
        uploads=stage.uploads,
        chunk_store=stage.chunk_store,
        lease_service=stage.lease_service,
        row_writer=stage.row_writer,
        session_factory=stage.Session,
        publisher=stage.publisher,
        lock_ttl_seconds=stage.lock_ttl_seconds,
        heartbeat_seconds=stage.heartbeat_seconds,
    )
    params.update(overrides)
    return RowProcessingStage(**params)


def _stored_rows(session_factory, upload_id):
    with session_factory() as session:
        return session.execute(
            select(func.count()).select_from(Store).where(Store.upload_id == upload_id)
        ).scalar()


def test_bad_rows_are_isolated(pipeline, uploads, chunk_store, session_factory, make_chunk, make_rows):
    rows = make_rows(100, invalid_rows=[10, 55])
    job = make_chunk(rows)

    outcome = pipeline.row_processing.run(job)

    assert outcome.status == "completed"
    assert (outcome.processed_rows, outcome.error_count) == (98, 2)

    record = uploads.get_upload(job.upload_id)
    assert record.processed_rows == 98
    assert record.error_count == 2
    assert _stored_rows(session_factory, job.upload_id) == 98

    errors = uploads.list_errors(job.upload_id)
    assert [e.row_number for e in errors] == [10, 55]
    assert errors[0].raw_row == rows[9]
    assert errors[1].raw_row == rows[54]
    assert "storeLatitude" in errors[0].message

    chunk = uploads.get_chunk(job.upload_id, 0)
    assert chunk.status == ChunkStatus.COMPLETED.value
    assert chunk.error_count == 2
    assert not chunk_store.exists(job.chunk_path)


def test_processing_progress_event(pipeline, publisher, make_chunk, make_rows):
    job = make_chunk(make_rows(4, invalid_rows=[2]), total_rows=8)

    pipeline.row_processing.run(job)

    [event] = publisher.of_type("processing_progress", job.upload_id)
    assert event.data["processedRows"] == 3
    assert event.data["errorCount"] == 1
    assert event.data["totalRows"] == 8
    assert event.data["chunkIndex"] == 0


def test_rows_get_their_source_position(pipeline, session_factory, make_chunk, make_rows):
    job = make_chunk(make_rows(3), chunk_index=2)

    pipeline.row_processing.run(job)

    with session_factory() as session:
        stored = session.execute(
            select(Store.chunk_index, Store.row_number, Store.store_name)
            .where(Store.upload_id == job.upload_id)
            .order_by(Store.row_number)
        ).all()
    assert [tuple(r) for r in stored] == [(2, 1, "Store 1"), (2, 2, "Store 2"), (2, 3, "Store 3")]


def test_concurrent_redelivery_is_skipped(pipeline, uploads, session_factory, make_chunk, make_rows):
    job = make_chunk(make_rows(5))
    started = threading.Event()
    release = threading.Event()

    class BlockingWriter(StoreRowWriter):
        def write(self, *args, **kwargs):
            started.set()
            release.wait(timeout=5)
            return super().write(*args, **kwargs)

    stage = _stage(pipeline, row_writer=BlockingWriter())
    outcomes = []
    first = threading.Thread(target=lambda: outcomes.append(stage.run(job)))
    first.start()
    assert started.wait(timeout=5)

    second = stage.run(job)
    release.set()
    first.join(timeout=10)

    assert second.status == "skipped"
    assert second.reason == "already_processing"
    assert [o.status for o in outcomes] == ["completed"]
    assert uploads.get_upload(job.upload_id).processed_rows == 5
    assert _stored_rows(session_factory, job.upload_id) == 5


def test_redelivery_after_completion_does_not_double_count(pipeline, uploads, chunk_store, make_chunk, make_rows):
    job = make_chunk(make_rows(5))
    pipeline.row_processing.run(job)

    # A stale copy of the artifact shows up again
    chunk_store.put(job.upload_id, job.chunk_index, make_rows(5))
    outcome = pipeline.row_processing.run(job)

    assert outcome.status == "skipped"
    assert outcome.reason == "already_completed"
    assert uploads.get_upload(job.upload_id).processed_rows == 5
    assert not chunk_store.exists(job.chunk_path)


def test_missing_artifact_fails_chunk_permanently(pipeline, uploads, publisher, chunk_store, make_chunk, make_rows):
    job = make_chunk(make_rows(5))
    chunk_store.delete(job.chunk_path)

    with pytest.raises(ChunkArtifactMissingError):
        pipeline.row_processing.run(job)

    record = uploads.get_upload(job.upload_id)
    assert record.processed_rows == 0
    assert record.error_count == 0
    assert uploads.get_chunk(job.upload_id, 0).status == ChunkStatus.FAILED.value

    [event] = publisher.of_type("error", job.upload_id)
    assert event.data["chunkIndex"] == 0
    assert "Chunk file not found" in event.data["message"]
    assert not pipeline.row_processing.lease_service.is_held(chunk_lease_key(job.upload_id, 0))


@pytest.mark.parametrize("payload", ["{not json", "{\"storeName\": \"A\"}"])
def test_corrupt_artifact_fails_chunk_permanently(pipeline, uploads, publisher, make_chunk, make_rows, payload):
    job = make_chunk(make_rows(4), total_rows=4)
    with open(job.chunk_path, "w", encoding="utf-8") as fh:
        fh.write(payload)

    with pytest.raises(ChunkArtifactCorruptError) as exc_info:
        pipeline.row_processing.run(job)

    assert isinstance(exc_info.value, NonRetryableError)
    assert uploads.get_chunk(job.upload_id, 0).status == ChunkStatus.FAILED.value
    assert not pipeline.row_processing.chunk_store.exists(job.chunk_path)
    [event] = publisher.of_type("error", job.upload_id)
    assert "Chunk file is unreadable" in event.data["message"]
    # The failed chunk closes the gap to total_rows
    assert uploads.get_upload(job.upload_id).status == UploadStatus.COMPLETED.value


def test_corrupt_artifact_still_lets_the_upload_complete(pipeline, job_queue, uploads, submit, write_csv, make_rows):
    upload_id = submit(write_csv(make_rows(5)))
    pipeline.intake.run(job_queue.pop())
    pipeline.decomposition.run(job_queue.pop())
    [chunk_job] = job_queue.pending()
    with open(chunk_job.chunk_path, "w", encoding="utf-8") as fh:
        fh.write("{not json")

    job_queue.drain(pipeline.dispatch, pipeline.on_retries_exhausted)

    assert len(job_queue.discarded) == 1
    assert uploads.get_chunk(upload_id, 0).status == ChunkStatus.FAILED.value
    assert uploads.get_upload(upload_id).status == UploadStatus.COMPLETED.value


def test_unknown_chunk_publishes_error(pipeline, uploads, publisher, chunk_store, make_rows):
    upload_id = uploads.create_upload("stores.csv", "text/csv", 100)
    ref = chunk_store.put(upload_id, 3, make_rows(2))
    job = RowProcessingJob(upload_id=upload_id, chunk_index=3, chunk_path=ref)

    with pytest.raises(NonRetryableError):
        pipeline.row_processing.run(job)

    [event] = publisher.of_type("error", upload_id)
    assert event.data == {"message": f"Unknown chunk 3 for upload {upload_id}", "chunkIndex": 3}


def test_transient_store_error_leaves_chunk_pending(pipeline, uploads, chunk_store, make_chunk, make_rows):
    job = make_chunk(make_rows(5))

    class DownWriter:
        def write(self, session, upload_id, chunk_index, row_number, row):
            raise TransientInfrastructureError("Destination store unavailable")

    with pytest.raises(TransientInfrastructureError):
        _stage(pipeline, row_writer=DownWriter()).run(job)

    assert uploads.get_chunk(job.upload_id, 0).status == ChunkStatus.PENDING.value
    assert uploads.get_upload(job.upload_id).processed_rows == 0
    assert chunk_store.exists(job.chunk_path)
    assert not pipeline.row_processing.lease_service.is_held(chunk_lease_key(job.upload_id, 0))

    # A retry with the store back up finishes the chunk
    assert pipeline.row_processing.run(job).status == "completed"


def test_lost_lease_refuses_to_commit(pipeline, uploads, chunk_store, make_chunk, make_rows):
    job = make_chunk(make_rows(3))

    class ExpiringLeases(InMemoryLeaseService):
        def renew(self, lease, ttl_seconds=None):
            return False

    class SlowWriter(StoreRowWriter):
        def write(self, *args, **kwargs):
            time.sleep(0.1)
            return super().write(*args, **kwargs)

    stage = _stage(
        pipeline,
        lease_service=ExpiringLeases(),
        row_writer=SlowWriter(),
        heartbeat_seconds=0.05,
    )

    with pytest.raises(LeaseServiceError):
        stage.run(job)

    assert uploads.get_chunk(job.upload_id, 0).status == ChunkStatus.PENDING.value
    assert uploads.get_upload(job.upload_id).processed_rows == 0
    assert chunk_store.exists(job.chunk_path)


def test_completion_fires_once(pipeline, uploads, publisher, make_chunk, make_rows):
    first = make_chunk(make_rows(3))
    second = make_chunk(make_rows(2, invalid_rows=[1]), chunk_index=1, upload_id=first.upload_id, total_rows=5)

    pipeline.row_processing.run(first)
    assert uploads.get_upload(first.upload_id).status != UploadStatus.COMPLETED.value

    pipeline.row_processing.run(second)

    record = uploads.get_upload(first.upload_id)
    assert record.status == UploadStatus.COMPLETED.value
    assert record.processed_rows + record.error_count == record.total_rows == 5
    completed = [
        e for e in publisher.of_type("file_progress", first.upload_id) if e.data["status"] == "completed"
    ]
    assert len(completed) == 1
    assert completed[0].data["errorCount"] == 1


def test_abandon_marks_chunk_failed(pipeline, uploads, publisher, chunk_store, make_chunk, make_rows):
    job = make_chunk(make_rows(3), total_rows=3)

    pipeline.row_processing.abandon(job, TransientInfrastructureError("Destination store unavailable"))

    assert uploads.get_chunk(job.upload_id, 0).status == ChunkStatus.FAILED.value
    assert not chunk_store.exists(job.chunk_path)
    assert uploads.get_upload(job.upload_id).status == UploadStatus.COMPLETED.value
    assert publisher.of_type("error", job.upload_id)[0].data["message"] == "Destination store unavailable"
