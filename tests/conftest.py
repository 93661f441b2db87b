"""
Pytest configuration and shared fixtures
"""

import sys
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List

import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ingestflow.config import Settings
from ingestflow.db.repository import UploadRepository
from ingestflow.db.session import create_db_engine, init_db, make_session_factory
from ingestflow.ingestion.pipeline import RETRYABLE_ERRORS, build_pipeline
from ingestflow.models.events import ProgressEvent
from ingestflow.services.chunk_store import LocalChunkStore
from ingestflow.services.lease_service import InMemoryLeaseService
from ingestflow.services.progress_publisher import InMemoryProgressPublisher
from ingestflow.tasks.queue import LocalJobQueue

CSV_MIME = "text/csv"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class RecordingPublisher(InMemoryProgressPublisher):
    """In-memory publisher that also keeps every event it delivered."""

    def __init__(self):
        super().__init__()
        self.events: List[ProgressEvent] = []

    def _deliver(self, event: ProgressEvent) -> None:
        self.events.append(event)
        super()._deliver(event)

    def of_type(self, event_type: str, upload_id: str = None) -> List[ProgressEvent]:
        return [
            e
            for e in self.events
            if e.type == event_type and (upload_id is None or e.upload_id == upload_id)
        ]


def store_rows(count: int, invalid_rows: Iterable[int] = ()) -> List[Dict[str, str]]:
    """
    Build store directory rows.

    Rows whose 1-based position is in ``invalid_rows`` get an out-of-range
    latitude so they fail validation.
    """
    invalid = set(invalid_rows)
    rows = []
    for i in range(1, count + 1):
        rows.append(
            {
                "storeName": f"Store {i}",
                "storeAddress": f"{i} Market Street",
                "cityName": ["Lisbon", "Porto", "Braga"][i % 3],
                "regionName": "North" if i % 2 else "South",
                "retailerName": f"Retailer {i % 7}",
                "storeType": ["supermarket", "convenience", "hypermarket"][i % 3],
                "storeLongitude": f"{-9.0 + i / 10000:.6f}",
                "storeLatitude": "999" if i in invalid else f"{38.0 + i / 10000:.6f}",
            }
        )
    return rows


def wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until ``condition`` holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every storage area at a temporary directory."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ingestflow.db'}",
        upload_dir=tmp_path / "uploads",
        working_dir=tmp_path / "work",
        chunk_dir=tmp_path / "chunks",
        chunk_size=1000,
        lock_ttl_seconds=5,
        lock_heartbeat_seconds=1,
        max_retries=2,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def uploads(session_factory):
    return UploadRepository(session_factory)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def lease_service():
    return InMemoryLeaseService()


@pytest.fixture
def chunk_store(settings):
    return LocalChunkStore(settings.chunk_dir)


@pytest.fixture
def job_queue(settings):
    return LocalJobQueue(max_retries=settings.max_retries, retryable=RETRYABLE_ERRORS)


@pytest.fixture
def pipeline(settings, job_queue, publisher, lease_service, session_factory, chunk_store):
    return build_pipeline(
        settings,
        queue=job_queue,
        publisher=publisher,
        lease_service=lease_service,
        session_factory=session_factory,
        chunk_store=chunk_store,
    )


@pytest.fixture
def write_csv(settings) -> Callable[..., Path]:
    """Write rows as a CSV file in the upload area and return its path."""

    def _write(rows: List[Dict[str, str]], name: str = "stores.csv") -> Path:
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        path = settings.upload_dir / name
        if rows:
            pd.DataFrame(rows).to_csv(path, index=False)
        else:
            path.write_text("storeName,storeAddress,cityName\n")
        return path

    return _write


@pytest.fixture
def write_xlsx(settings) -> Callable[..., Path]:
    """Write rows as the first sheet of an .xlsx workbook."""

    def _write(rows: List[Dict[str, str]], name: str = "stores.xlsx") -> Path:
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        path = settings.upload_dir / name
        pd.DataFrame(rows).to_excel(path, index=False, sheet_name="Stores")
        return path

    return _write


@pytest.fixture
def submit(pipeline) -> Callable[..., str]:
    """Submit a file through intake and return the upload id."""

    def _submit(path: Path, mime_type: str = CSV_MIME) -> str:
        return pipeline.intake.submit(str(path), mime_type, path.name, path.stat().st_size)

    return _submit


@pytest.fixture
def make_rows() -> Callable[..., List[Dict[str, str]]]:
    return store_rows


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return wait_for
