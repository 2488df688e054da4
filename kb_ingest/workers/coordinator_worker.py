"""
Coordinator worker - long-running local host for the ingestion coordinator.

Pumps the database-backed buffering queue into the coordinator when running
outside Lambda/SQS. Each cycle:
1. Receives the next debounced batch (if any)
2. Runs the coordinator on it
3. Acknowledges the batch on success, fails it (redelivery / dead letter) on error
4. Expires dead letters past the retention period

CONSTRAINTS:
- Exactly one worker process per queue: the single loop below is what
  guarantees at most one coordinator invocation at a time
- Graceful shutdown on SIGTERM/SIGINT

Usage:
    python -m kb_ingest.workers.coordinator_worker
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from kb_ingest.config.coordinator_settings import (
    CoordinatorSettings,
    get_coordinator_settings,
)
from kb_ingest.database.session import get_session_factory
from kb_ingest.ingestion.buffering.queue import SqlBufferingQueue
from kb_ingest.ingestion.events import batch_from_messages
from kb_ingest.ingestion.jobs.coordinator import IngestionJobCoordinator
from kb_ingest.ingestion.jobs.interfaces import JobStatusSource
from kb_ingest.ingestion.jobs.models import CoordinatorAction
from kb_ingest.ingestion.jobs.retry import RedeliveryPolicy, categorize_error
from kb_ingest.integrations.bedrock.client import BedrockIngestionClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Cumulative statistics for the worker process lifetime."""

    cycles: int = 0
    batches_handled: int = 0
    batches_failed: int = 0
    jobs_started: int = 0
    retries_scheduled: int = 0
    messages_dead_lettered: int = 0
    dead_letters_expired: int = 0
    errors: int = 0
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        uptime = (
            datetime.now(timezone.utc) - self.started_at
        ).total_seconds()
        return {
            "cycles": self.cycles,
            "batches_handled": self.batches_handled,
            "batches_failed": self.batches_failed,
            "jobs_started": self.jobs_started,
            "retries_scheduled": self.retries_scheduled,
            "messages_dead_lettered": self.messages_dead_lettered,
            "dead_letters_expired": self.dead_letters_expired,
            "errors": self.errors,
            "uptime_seconds": round(uptime, 2),
        }


def build_local_queue(
    db_session: Session,
    settings: CoordinatorSettings,
    clock: Optional[Callable[[], datetime]] = None,
) -> SqlBufferingQueue:
    """Build the buffering queue configured by settings."""
    return SqlBufferingQueue(
        db_session,
        queue_name=settings.queue_name,
        debounce_window_seconds=settings.debounce_window_seconds,
        max_batch_size=settings.max_batch_size,
        policy=RedeliveryPolicy(
            max_receive_count=settings.max_receive_count,
            redelivery_interval_seconds=settings.redelivery_interval_seconds,
            dead_letter_retention_days=settings.dead_letter_retention_days,
        ),
        purge_cooldown_seconds=settings.purge_cooldown_seconds,
        clock=clock,
    )


def build_local_coordinator(
    queue: SqlBufferingQueue,
    settings: CoordinatorSettings,
    ingestion: Optional[JobStatusSource] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> IngestionJobCoordinator:
    """
    Build a coordinator over the local queue.

    Args:
        queue: Local buffering queue (also the retry-token target)
        settings: Coordinator settings
        ingestion: Ingestion service implementing both JobStatusSource and
            JobStarter (defaults to the Bedrock client from settings)
        clock: Time source for retry tokens
    """
    if ingestion is None:
        settings.require("knowledge_base_id", "data_source_id")
        ingestion = BedrockIngestionClient(
            knowledge_base_id=settings.knowledge_base_id,
            data_source_id=settings.data_source_id,
            region_name=settings.aws_region,
        )
    return IngestionJobCoordinator(
        status_source=ingestion,
        job_starter=ingestion,
        queue=queue,
        retry_delay_seconds=settings.retry_delay_seconds,
        clock=clock,
    )


def run_cycle(
    queue: SqlBufferingQueue,
    coordinator: IngestionJobCoordinator,
    stats: WorkerStats,
) -> bool:
    """
    Run one worker cycle.

    Returns:
        True if a batch was delivered this cycle
    """
    try:
        messages = queue.receive_batch()
        if messages:
            _handle_messages(queue, coordinator, messages, stats)

        stats.dead_letters_expired += queue.expire_dead_letters()
        stats.cycles += 1
        return bool(messages)

    except Exception:
        stats.errors += 1
        queue.db.rollback()
        logger.exception(
            "coordinator_worker.cycle_error",
            extra={"cycle": stats.cycles},
        )
        return False


def _handle_messages(queue, coordinator, messages, stats: WorkerStats) -> None:
    batch = batch_from_messages(messages)
    handles = [m.receipt_handle for m in messages]

    try:
        result = coordinator.handle_batch(batch)
    except Exception as e:
        stats.batches_failed += 1
        category = getattr(e, "category", None) or categorize_error(error_type=type(e).__name__)
        dead_lettered = queue.fail(
            handles,
            error_message=f"{type(e).__name__}: {e}",
            error_category=category,
        )
        stats.messages_dead_lettered += dead_lettered
        logger.warning(
            "coordinator_worker.batch_failed",
            extra={
                "batch_size": len(batch),
                "error_category": category.value,
                "dead_lettered": dead_lettered,
            },
        )
        return

    queue.acknowledge(handles)
    stats.batches_handled += 1
    if result.action == CoordinatorAction.STARTED:
        stats.jobs_started += 1
    elif result.action == CoordinatorAction.RETRY_SCHEDULED:
        stats.retries_scheduled += 1


async def run_worker(settings: Optional[CoordinatorSettings] = None) -> None:
    """
    Main worker loop. Runs until SIGTERM/SIGINT.

    Creates a fresh DB session each cycle for connection health.
    """
    settings = settings or get_coordinator_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    session_factory = get_session_factory(settings.buffer_database_url)
    settings.require("knowledge_base_id", "data_source_id")
    ingestion = BedrockIngestionClient(
        knowledge_base_id=settings.knowledge_base_id,
        data_source_id=settings.data_source_id,
        region_name=settings.aws_region,
    )

    stats = WorkerStats()
    shutdown_event = asyncio.Event()

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, shutting down gracefully", sig)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Coordinator worker starting",
        extra={
            "queue_name": settings.queue_name,
            "poll_interval_seconds": settings.worker_poll_interval_seconds,
            "debounce_window_seconds": settings.debounce_window_seconds,
        },
    )

    while not shutdown_event.is_set():
        session = session_factory()
        try:
            queue = build_local_queue(session, settings)
            coordinator = build_local_coordinator(queue, settings, ingestion=ingestion)
            delivered = run_cycle(queue, coordinator, stats)
        finally:
            session.close()

        if delivered:
            # More batches may already be waiting
            continue

        try:
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=settings.worker_poll_interval_seconds,
            )
        except asyncio.TimeoutError:
            pass  # Normal: timeout = no shutdown, continue loop

    logger.info("Coordinator worker stopped", extra=stats.to_dict())


def main():
    """Entry point for running worker from command line."""
    try:
        asyncio.run(run_worker())
        sys.exit(0)
    except Exception as e:
        logger.error("Coordinator worker crashed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
