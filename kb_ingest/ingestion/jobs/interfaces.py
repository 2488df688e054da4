"""
Collaborator capabilities injected into the ingestion job coordinator.

Three narrow interfaces isolate every side effect:
- JobStatusSource: read the latest ingestion job for the index
- JobStarter: request a new ingestion job
- CoordinatorQueue: depth introspection, purge, delayed enqueue

Production implementations live in kb_ingest.integrations (Bedrock, SQS);
the local buffering queue implements CoordinatorQueue as well.
"""

from abc import ABC, abstractmethod

from kb_ingest.ingestion.jobs.models import (
    IngestionJobSnapshot,
    QueueDepth,
    RetryToken,
)


class JobStatusSource(ABC):
    """Reads ingestion job state."""

    @abstractmethod
    def get_latest_job(self) -> IngestionJobSnapshot:
        """
        Get the most recent ingestion job for the index.

        Returns:
            Snapshot of the latest job (NOT_STARTED snapshot if none exists)

        Raises:
            Exception: On any service failure (invocation must fail)
        """


class JobStarter(ABC):
    """Starts ingestion jobs."""

    @abstractmethod
    def start_job(self) -> IngestionJobSnapshot:
        """
        Request a new full-scan ingestion job.

        Returns:
            Snapshot of the new job with its initial status

        Raises:
            Exception: On any service failure (invocation must fail)
        """


class CoordinatorQueue(ABC):
    """Buffering queue operations used by the coordinator."""

    @abstractmethod
    def get_depth(self) -> QueueDepth:
        """Return visible, delayed and in-flight message counts."""

    @abstractmethod
    def purge(self) -> None:
        """
        Remove every undelivered message.

        Raises:
            QueuePurgeInProgressError: Inside the purge cooldown window
        """

    @abstractmethod
    def enqueue_retry_token(self, token: RetryToken, delay_seconds: int) -> str:
        """
        Enqueue a retry token that becomes visible after delay_seconds.

        Returns:
            Message identifier of the enqueued token
        """
