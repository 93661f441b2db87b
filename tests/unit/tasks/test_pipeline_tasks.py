"""
Tests for the Celery task wrappers.
"""

import pytest
from celery.exceptions import Reject

from ingestflow.errors import TransientInfrastructureError
from ingestflow.ingestion.row_processing import RowProcessingStage
from ingestflow.models.jobs import RowProcessingJob
from ingestflow.models.upload import ChunkStatus
from ingestflow.tasks import pipeline as pipeline_tasks


@pytest.fixture
def worker_pipeline(pipeline, monkeypatch):
    """Run the tasks against the local test pipeline."""
    monkeypatch.setattr(pipeline_tasks, "_pipeline", pipeline)
    return pipeline


@pytest.fixture
def chunk_job(uploads, chunk_store, make_rows):
    upload_id = uploads.create_upload("stores.csv", "text/csv", 100)
    ref = chunk_store.put(upload_id, 0, make_rows(3))
    uploads.record_chunk(upload_id, 0, 3)
    uploads.finalize_decomposition(upload_id, 3)
    return RowProcessingJob(upload_id=upload_id, chunk_index=0, chunk_path=ref)


def test_process_chunk_returns_outcome(worker_pipeline, chunk_job):
    result = pipeline_tasks.process_chunk(chunk_job.to_payload())

    assert result["status"] == "completed"
    assert result["processed_rows"] == 3


def test_missing_artifact_is_rejected_without_requeue(worker_pipeline, chunk_store, chunk_job):
    chunk_store.delete(chunk_job.chunk_path)

    with pytest.raises(Reject) as exc_info:
        pipeline_tasks.process_chunk(chunk_job.to_payload())

    assert exc_info.value.requeue is False


def test_transient_error_is_raised_for_retry(worker_pipeline, uploads, chunk_job, monkeypatch):
    def store_down(self, job):
        raise TransientInfrastructureError("Destination store unavailable")

    monkeypatch.setattr(RowProcessingStage, "run", store_down)

    with pytest.raises(TransientInfrastructureError):
        pipeline_tasks.process_chunk(chunk_job.to_payload())

    assert uploads.get_chunk(chunk_job.upload_id, 0).status == ChunkStatus.PENDING.value


def test_exhausted_retries_fail_the_chunk(worker_pipeline, uploads, chunk_job, monkeypatch):
    def store_down(self, job):
        raise TransientInfrastructureError("Destination store unavailable")

    monkeypatch.setattr(RowProcessingStage, "run", store_down)

    result = pipeline_tasks.process_chunk.apply(
        kwargs={"payload": chunk_job.to_payload()},
        retries=pipeline_tasks.process_chunk.max_retries,
    )

    assert result.failed()
    assert uploads.get_chunk(chunk_job.upload_id, 0).status == ChunkStatus.FAILED.value


def test_unexpected_error_fails_the_chunk_at_once(worker_pipeline, uploads, publisher, chunk_job, monkeypatch):
    def broken(self, job):
        raise KeyError("chunkPath")

    monkeypatch.setattr(RowProcessingStage, "run", broken)

    with pytest.raises(KeyError):
        pipeline_tasks.process_chunk(chunk_job.to_payload())

    assert uploads.get_chunk(chunk_job.upload_id, 0).status == ChunkStatus.FAILED.value
    assert uploads.get_upload(chunk_job.upload_id).status == "completed"
    assert publisher.of_type("error", chunk_job.upload_id)


def test_tasks_are_routed_to_stage_queues():
    routes = pipeline_tasks.app.conf.task_routes

    assert routes["tasks.intake_upload"] == {"queue": "file-upload"}
    assert routes["tasks.decompose_upload"] == {"queue": "file-chunking"}
    assert routes["tasks.process_chunk"] == {"queue": "data-processing"}
    assert pipeline_tasks.process_chunk.acks_late is True


def test_default_pool_size_comes_from_row_worker_concurrency():
    assert pipeline_tasks.app.conf.worker_concurrency == pipeline_tasks.settings.row_worker_concurrency
