"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: SQLite in-memory store for the buffering queue
- clock: controllable time source shared by queue and coordinator
- fake_ingestion: in-memory ingestion service (status + start)
- temp_config_dir / make_yaml_config: YAML config files for settings tests
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from kb_ingest.ingestion.jobs.interfaces import JobStarter, JobStatusSource
from kb_ingest.ingestion.jobs.models import IngestionJobSnapshot, IngestionJobStatus

# Never pick up a developer's config file
os.environ.pop("KB_INGEST_CONFIG", None)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeIngestionService(JobStatusSource, JobStarter):
    """
    In-memory ingestion service.

    Jobs start in IN_PROGRESS and stay there until complete_current() is
    called. Every start is recorded, including starts that overlap a running
    job, so tests can assert single-flight.
    """

    def __init__(self, status: IngestionJobStatus = IngestionJobStatus.NOT_STARTED):
        self.jobs: list[IngestionJobSnapshot] = []
        self.overlapping_starts = 0
        self.status_calls = 0
        self.status_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        if status != IngestionJobStatus.NOT_STARTED:
            self.jobs.append(IngestionJobSnapshot(job_id="job-existing", status=status))

    @property
    def latest(self) -> IngestionJobSnapshot:
        return self.jobs[-1] if self.jobs else IngestionJobSnapshot.not_started()

    def get_latest_job(self) -> IngestionJobSnapshot:
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        return self.latest

    def start_job(self) -> IngestionJobSnapshot:
        if self.start_error is not None:
            raise self.start_error
        if self.latest.is_in_progress:
            self.overlapping_starts += 1
        job = IngestionJobSnapshot(
            job_id=f"job-{uuid.uuid4().hex[:8]}",
            status=IngestionJobStatus.STARTING,
        )
        self.jobs.append(job)
        return job

    def complete_current(self, status: IngestionJobStatus = IngestionJobStatus.COMPLETE) -> None:
        if self.jobs:
            current = self.jobs[-1]
            self.jobs[-1] = IngestionJobSnapshot(job_id=current.job_id, status=status)


@pytest.fixture
def db_engine():
    """SQLite in-memory engine with the buffering queue tables."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from kb_ingest.database.base import Base
    from kb_ingest.ingestion.buffering import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    """Fresh session per test; the engine is discarded afterwards."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_ingestion() -> FakeIngestionService:
    return FakeIngestionService()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Config fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("coordinator.yml", {"queue": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
