"""
Ingestion job coordinator.

Consumes buffered change notifications and decides, per batch, whether to:
- Start a new full-scan ingestion job (no job in progress)
- Schedule one delayed retry token (a job is already in progress)
- Do nothing (empty batch)

Single-flight: at most one ingestion job may be in progress for the index.
The ingestion service does not reject concurrent starts, so the status check
below is the only guard. It is only sound when the hosting platform runs at
most one coordinator invocation at a time (concurrency cap of exactly 1);
this module performs no locking of its own.

Returning normally acknowledges the batch. Raising leaves it for redelivery.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from kb_ingest.ingestion.jobs.interfaces import (
    CoordinatorQueue,
    JobStarter,
    JobStatusSource,
)
from kb_ingest.ingestion.jobs.models import (
    CoordinatorAction,
    CoordinatorResult,
    IngestionJobSnapshot,
    IngestionJobStatus,
    NotificationBatch,
    RetryToken,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 300


@dataclass(frozen=True)
class CoordinatorDecision:
    """
    Side-effect-free decision for one batch.

    Attributes:
        action: What the invocation does
        purge: Whether a best-effort purge precedes the job start
    """
    action: CoordinatorAction
    purge: bool = False


def decide_action(
    status: IngestionJobStatus,
    pending_depth: int = 0,
    batch_size: int = 1,
) -> CoordinatorDecision:
    """
    Decide the coordinator's action from job status and queue depth.

    Args:
        status: Latest ingestion job status
        pending_depth: Visible + delayed messages in the buffering queue
        batch_size: Notifications in the current batch

    Returns:
        CoordinatorDecision
    """
    if batch_size <= 0:
        return CoordinatorDecision(action=CoordinatorAction.SKIPPED)

    if status.is_in_progress:
        return CoordinatorDecision(action=CoordinatorAction.RETRY_SCHEDULED)

    # Every queued message is redundant once a full scan starts
    return CoordinatorDecision(
        action=CoordinatorAction.STARTED,
        purge=pending_depth > 0,
    )


class IngestionJobCoordinator:
    """
    Coordinates ingestion jobs for one knowledge-base data source.

    Stateless between invocations: all state is read back from the
    ingestion service and the buffering queue on every batch.
    """

    def __init__(
        self,
        status_source: JobStatusSource,
        job_starter: JobStarter,
        queue: CoordinatorQueue,
        retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize coordinator.

        Args:
            status_source: Reads the latest ingestion job
            job_starter: Starts new ingestion jobs
            queue: Buffering queue (depth, purge, delayed enqueue)
            retry_delay_seconds: Delay before a retry token becomes visible
            clock: Time source for retry tokens (defaults to utcnow)
        """
        if retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be non-negative")

        self.status_source = status_source
        self.job_starter = job_starter
        self.queue = queue
        self.retry_delay_seconds = retry_delay_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def handle_batch(self, batch: NotificationBatch) -> CoordinatorResult:
        """
        Handle one batch of buffered notifications.

        Args:
            batch: Notifications delivered by the buffering queue

        Returns:
            CoordinatorResult describing the action taken

        Raises:
            Exception: If the status query, retry enqueue or job start fails.
                The batch must then be left for redelivery.
        """
        if batch.is_empty:
            logger.info("coordinator.empty_batch")
            return CoordinatorResult(action=CoordinatorAction.SKIPPED, notifications=0)

        for notification in batch:
            logger.debug(
                "coordinator.notification",
                extra={
                    "message_id": notification.message_id,
                    "event_kind": notification.event_kind.value,
                    "object_key": notification.object_key,
                },
            )

        latest = self._get_latest_job(batch)

        # Depth is only read when a job could start
        pending_depth = None if latest.is_in_progress else self._get_pending_depth()
        decision = decide_action(
            latest.status,
            pending_depth=pending_depth or 0,
            batch_size=len(batch),
        )

        if decision.action == CoordinatorAction.RETRY_SCHEDULED:
            result = self._schedule_retry(batch, latest)
        else:
            result = self._start_job(batch, latest, decision, pending_depth)

        self._log_result(result, batch, latest)
        return result

    def _get_latest_job(self, batch: NotificationBatch) -> IngestionJobSnapshot:
        try:
            return self.status_source.get_latest_job()
        except Exception:
            logger.error(
                "coordinator.status_query_failed",
                extra={"batch_size": len(batch)},
                exc_info=True,
            )
            raise

    def _schedule_retry(
        self,
        batch: NotificationBatch,
        latest: IngestionJobSnapshot,
    ) -> CoordinatorResult:
        """Collapse the whole batch into exactly one delayed retry token."""
        token = RetryToken(observed_job_id=latest.job_id, created_at=self._clock())
        try:
            message_id = self.queue.enqueue_retry_token(token, self.retry_delay_seconds)
        except Exception:
            logger.error(
                "coordinator.retry_enqueue_failed",
                extra={
                    "observed_job_id": latest.job_id,
                    "batch_size": len(batch),
                },
                exc_info=True,
            )
            raise

        return CoordinatorResult(
            action=CoordinatorAction.RETRY_SCHEDULED,
            notifications=len(batch),
            job_id=latest.job_id,
            status=latest.status.value,
            retry_message_id=message_id,
        )

    def _start_job(
        self,
        batch: NotificationBatch,
        latest: IngestionJobSnapshot,
        decision: CoordinatorDecision,
        pending_depth: Optional[int],
    ) -> CoordinatorResult:
        purge_succeeded = False
        if decision.purge:
            purge_succeeded = self._try_purge(pending_depth)

        try:
            job = self.job_starter.start_job()
        except Exception:
            logger.error(
                "coordinator.job_start_failed",
                extra={
                    "previous_job_id": latest.job_id,
                    "previous_status": latest.status.value,
                    "batch_size": len(batch),
                },
                exc_info=True,
            )
            raise

        return CoordinatorResult(
            action=CoordinatorAction.STARTED,
            notifications=len(batch),
            job_id=job.job_id,
            status=job.status.value,
            pending_depth=pending_depth,
            purge_attempted=decision.purge,
            purge_succeeded=purge_succeeded,
        )

    def _get_pending_depth(self) -> Optional[int]:
        """
        Read pending depth for the purge decision.

        A failed read only skips the purge; it never blocks the job start.
        """
        try:
            return self.queue.get_depth().pending
        except Exception as e:
            logger.warning(
                "coordinator.depth_query_failed",
                extra={"error": str(e)},
            )
            return None

    def _try_purge(self, pending_depth: Optional[int]) -> bool:
        """Best-effort purge. Failures (e.g. cooldown) are logged and ignored."""
        try:
            self.queue.purge()
        except Exception as e:
            logger.warning(
                "coordinator.purge_failed",
                extra={
                    "pending_depth": pending_depth,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return False

        logger.info("coordinator.queue_purged", extra={"pending_depth": pending_depth})
        return True

    def _log_result(
        self,
        result: CoordinatorResult,
        batch: NotificationBatch,
        latest: IngestionJobSnapshot,
    ) -> None:
        extra = {
            **result.to_dict(),
            "previous_job_id": latest.job_id,
            "previous_status": latest.status.value,
            "retry_tokens_in_batch": batch.retry_token_count,
            "kind_counts": batch.kind_counts(),
        }
        if result.action == CoordinatorAction.RETRY_SCHEDULED:
            extra["retry_delay_seconds"] = self.retry_delay_seconds
            logger.info("coordinator.retry_scheduled", extra=extra)
        else:
            logger.info("coordinator.job_started", extra=extra)
