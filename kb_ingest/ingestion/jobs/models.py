"""
Ingestion job models for knowledge-base coordination.

Defines the transient records the coordinator reasons about:
- ChangeNotification / NotificationBatch (delivered by the buffering queue)
- RetryToken (self-scheduled "re-check later" message)
- IngestionJobSnapshot (latest job state read from the ingestion service)
- QueueDepth (pending work in the buffering queue)
- CoordinatorResult (outcome of one invocation, for observability)

None of these are persisted by the coordinator. All state lives in the
ingestion service and the buffering queue.
"""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

RETRY_TOKEN_KIND = "retry_token"
RETRY_TOKEN_REASON = "ingestion_job_in_progress"


class EventKind(str, enum.Enum):
    """Kind of change a notification describes."""
    CREATED = "created"
    DELETED = "deleted"
    RETRY = "retry"  # Self-scheduled retry token
    UNKNOWN = "unknown"  # Unparseable or unrecognised body - still evidence of change


class IngestionJobStatus(str, enum.Enum):
    """Ingestion job status as reported by the ingestion service."""
    NOT_STARTED = "NOT_STARTED"  # No job has ever run for this data source
    STARTING = "STARTING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"

    @classmethod
    def parse(cls, value: Optional[str]) -> "IngestionJobStatus":
        """Parse a service status string, treating missing values as NOT_STARTED."""
        if not value:
            return cls.NOT_STARTED
        try:
            return cls(value.upper())
        except ValueError:
            raise ValueError(f"Unknown ingestion job status: {value!r}")

    @property
    def is_in_progress(self) -> bool:
        """True while the job slot is occupied."""
        return self in (
            IngestionJobStatus.STARTING,
            IngestionJobStatus.IN_PROGRESS,
            IngestionJobStatus.STOPPING,
        )


class CoordinatorAction(str, enum.Enum):
    """Action taken by one coordinator invocation."""
    STARTED = "STARTED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    SKIPPED = "SKIPPED"  # Empty batch, nothing to do


@dataclass(frozen=True)
class ChangeNotification:
    """
    One buffered notification.

    Notifications are fungible: only their presence matters, never their
    payload.

    Attributes:
        message_id: Queue message identifier
        event_kind: created | deleted | retry | unknown
        object_key: Store object key (None for retry tokens / unknown bodies)
        bucket: Store bucket name, when known
        timestamp: Event time reported by the source, when known
        receipt_handle: Queue receipt handle for acknowledgment
    """
    message_id: str
    event_kind: EventKind
    object_key: Optional[str] = None
    bucket: Optional[str] = None
    timestamp: Optional[datetime] = None
    receipt_handle: Optional[str] = None

    @property
    def is_retry_token(self) -> bool:
        return self.event_kind == EventKind.RETRY


@dataclass(frozen=True)
class NotificationBatch:
    """Ordered batch of notifications delivered to one coordinator invocation."""
    notifications: tuple = ()

    def __post_init__(self):
        # Accept any iterable but store an immutable tuple
        object.__setattr__(self, "notifications", tuple(self.notifications))

    def __len__(self) -> int:
        return len(self.notifications)

    def __iter__(self) -> Iterator[ChangeNotification]:
        return iter(self.notifications)

    @property
    def is_empty(self) -> bool:
        return not self.notifications

    @property
    def retry_token_count(self) -> int:
        return sum(1 for n in self.notifications if n.is_retry_token)

    @property
    def receipt_handles(self) -> list[str]:
        return [n.receipt_handle for n in self.notifications if n.receipt_handle]

    def kind_counts(self) -> dict[str, int]:
        """Count notifications per event kind (for logging)."""
        counts: dict[str, int] = {}
        for notification in self.notifications:
            key = notification.event_kind.value
            counts[key] = counts.get(key, 0) + 1
        return counts


@dataclass(frozen=True)
class RetryToken:
    """
    Synthetic "re-check later" message enqueued when a job is in progress.

    Attributes:
        observed_job_id: Job that was in progress when the token was created
        created_at: Creation timestamp
        reason: Why the retry was scheduled
    """
    observed_job_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = RETRY_TOKEN_REASON

    def to_body(self) -> str:
        """Serialize to a queue message body."""
        return json.dumps(
            {
                "kind": RETRY_TOKEN_KIND,
                "reason": self.reason,
                "observed_job_id": self.observed_job_id,
                "created_at": self.created_at.isoformat(),
            }
        )


@dataclass(frozen=True)
class IngestionJobSnapshot:
    """
    Latest known state of an ingestion job.

    Attributes:
        job_id: Opaque job identifier (None when no job has ever run)
        status: Job status
        started_at: When the job started, if reported
        updated_at: Last status change, if reported
    """
    job_id: Optional[str]
    status: IngestionJobStatus
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def not_started(cls) -> "IngestionJobSnapshot":
        return cls(job_id=None, status=IngestionJobStatus.NOT_STARTED)

    @property
    def is_in_progress(self) -> bool:
        return self.status.is_in_progress


@dataclass(frozen=True)
class QueueDepth:
    """
    Buffering queue depth.

    Attributes:
        visible: Messages available for immediate delivery
        delayed: Messages scheduled but not yet visible (includes retry tokens)
        in_flight: Messages delivered and awaiting acknowledgment
    """
    visible: int = 0
    delayed: int = 0
    in_flight: int = 0

    @property
    def pending(self) -> int:
        """Messages not yet delivered: visible plus delayed."""
        return self.visible + self.delayed


@dataclass
class CoordinatorResult:
    """
    Outcome of one coordinator invocation.

    Used only for observability (logs and the Lambda return value).
    """
    action: CoordinatorAction
    notifications: int
    job_id: Optional[str] = None
    status: Optional[str] = None
    pending_depth: Optional[int] = None
    purge_attempted: bool = False
    purge_succeeded: bool = False
    retry_message_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "job_id": self.job_id,
            "status": self.status,
            "notifications": self.notifications,
            "pending_depth": self.pending_depth,
            "purge_attempted": self.purge_attempted,
            "purge_succeeded": self.purge_succeeded,
            "retry_message_id": self.retry_message_id,
        }
