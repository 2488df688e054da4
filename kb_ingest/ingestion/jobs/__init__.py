"""Job coordination for knowledge-base ingestion."""

from kb_ingest.ingestion.jobs.models import (
    ChangeNotification,
    CoordinatorAction,
    CoordinatorResult,
    EventKind,
    IngestionJobSnapshot,
    IngestionJobStatus,
    NotificationBatch,
    QueueDepth,
    RetryToken,
)
from kb_ingest.ingestion.jobs.interfaces import (
    CoordinatorQueue,
    JobStarter,
    JobStatusSource,
)
from kb_ingest.ingestion.jobs.coordinator import (
    CoordinatorDecision,
    IngestionJobCoordinator,
    decide_action,
)
from kb_ingest.ingestion.jobs.retry import RedeliveryPolicy, should_redeliver, categorize_error

__all__ = [
    "ChangeNotification",
    "CoordinatorAction",
    "CoordinatorResult",
    "EventKind",
    "IngestionJobSnapshot",
    "IngestionJobStatus",
    "NotificationBatch",
    "QueueDepth",
    "RetryToken",
    "CoordinatorQueue",
    "JobStarter",
    "JobStatusSource",
    "CoordinatorDecision",
    "IngestionJobCoordinator",
    "decide_action",
    "RedeliveryPolicy",
    "should_redeliver",
    "categorize_error",
]
