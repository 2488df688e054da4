"""
Property tests for single-flight job coordination.

Drives the coordinator against the local buffering queue and an in-memory
ingestion service through random sequences of uploads, clock movement and
job completion, one invocation at a time.

Validates:
- No job is ever started while another is in progress
- Every change is eventually covered by a job started at or after it
"""

from contextlib import contextmanager

from hypothesis import HealthCheck, given, settings, strategies as st
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import FakeClock, FakeIngestionService
from kb_ingest.database.base import Base
from kb_ingest.ingestion.buffering import models  # noqa: F401
from kb_ingest.ingestion.buffering.queue import SqlBufferingQueue
from kb_ingest.ingestion.events import batch_from_messages
from kb_ingest.ingestion.jobs.coordinator import IngestionJobCoordinator
from kb_ingest.ingestion.jobs.models import IngestionJobSnapshot

DEBOUNCE_WINDOW_SECONDS = 60
RETRY_DELAY_SECONDS = 300


class TimedIngestionService(FakeIngestionService):
    """Records the simulated time of every start."""

    def __init__(self, clock: FakeClock):
        super().__init__()
        self.clock = clock
        self.start_times = []

    def start_job(self) -> IngestionJobSnapshot:
        job = super().start_job()
        self.start_times.append(self.clock())
        return job


@contextmanager
def local_queue(clock: FakeClock):
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield SqlBufferingQueue(
            session,
            queue_name="kb-test",
            debounce_window_seconds=DEBOUNCE_WINDOW_SECONDS,
            clock=clock,
        )
    finally:
        session.close()
        engine.dispose()


def invoke_once(queue: SqlBufferingQueue, coordinator: IngestionJobCoordinator) -> bool:
    messages = queue.receive_batch()
    if not messages:
        return False
    coordinator.handle_batch(batch_from_messages(messages))
    queue.acknowledge(m.receipt_handle for m in messages)
    return True


step = st.one_of(
    st.tuples(st.just("upload"), st.integers(min_value=1, max_value=15)),
    st.tuples(st.just("advance"), st.integers(min_value=1, max_value=400)),
    st.tuples(st.just("complete"), st.just(0)),
)


@settings(
    max_examples=60,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
@given(steps=st.lists(step, min_size=1, max_size=40))
def test_at_most_one_job_in_progress(steps):
    clock = FakeClock()
    ingestion = TimedIngestionService(clock)
    last_upload_at = None

    with local_queue(clock) as queue:
        coordinator = IngestionJobCoordinator(
            status_source=ingestion,
            job_starter=ingestion,
            queue=queue,
            retry_delay_seconds=RETRY_DELAY_SECONDS,
            clock=clock,
        )

        for action, value in steps:
            if action == "upload":
                for i in range(value):
                    queue.send_change(f"docs/file-{i}.pdf")
                last_upload_at = clock()
            elif action == "advance":
                clock.advance(value)
            else:
                ingestion.complete_current()

            invoke_once(queue, coordinator)
            assert ingestion.overlapping_starts == 0

        # Let running jobs finish and drain the queue
        for _ in range(100):
            depth = queue.get_depth()
            if depth.pending == 0 and depth.in_flight == 0:
                break
            ingestion.complete_current()
            clock.advance(RETRY_DELAY_SECONDS + 1)
            invoke_once(queue, coordinator)
            assert ingestion.overlapping_starts == 0
        else:
            raise AssertionError("queue never drained")

    if last_upload_at is not None:
        assert ingestion.start_times
        assert max(ingestion.start_times) >= last_upload_at
