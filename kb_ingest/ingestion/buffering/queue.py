"""
Local buffering queue backed by SQLAlchemy.

Reproduces the buffering queue contract the coordinator depends on:
- Debounce: a batch is delivered once the oldest visible message has waited
  the quiet window, or as soon as max_batch_size messages are visible
- Enqueue-with-delay (retry tokens)
- Receipt handles, acknowledgment, explicit failure
- Redelivery after a fixed interval; in-flight messages whose visibility
  expires are redelivered as well
- Dead-lettering after max_receive_count deliveries without acknowledgment,
  body unmodified, retained for a bounded period
- Depth introspection (visible, delayed, in flight)
- Purge of undelivered messages, at most once per cooldown interval

No Celery, no broker: driven entirely by database state. Every public
method commits its own transaction.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from kb_ingest.ingestion.buffering.models import (
    BufferQueue,
    BufferedMessage,
    DeadLetterMessage,
    as_utc,
)
from kb_ingest.ingestion.jobs.interfaces import CoordinatorQueue
from kb_ingest.ingestion.jobs.models import EventKind, QueueDepth, RetryToken
from kb_ingest.ingestion.jobs.retry import (
    ErrorCategory,
    RedeliveryPolicy,
    log_redelivery_decision,
    should_redeliver,
)
from kb_ingest.integrations.sqs.exceptions import QueuePurgeInProgressError

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_WINDOW_SECONDS = 60
DEFAULT_MAX_BATCH_SIZE = 10
DEFAULT_PURGE_COOLDOWN_SECONDS = 60

_DETAIL_TYPES = {
    EventKind.CREATED: "Object Created",
    EventKind.DELETED: "Object Deleted",
}


@dataclass(frozen=True)
class ReceivedMessage:
    """
    A delivered message, detached from the session.

    Attributes:
        message_id: Message identifier
        body: Raw body
        receipt_handle: Handle for acknowledge()/fail()
        receive_count: Deliveries including this one
        sent_at: When the message was enqueued
    """
    message_id: str
    body: str
    receipt_handle: str
    receive_count: int
    sent_at: Optional[datetime]


class SqlBufferingQueue(CoordinatorQueue):
    """
    Buffering queue persisted with SQLAlchemy.

    Also implements CoordinatorQueue so the coordinator can run against it
    unchanged.
    """

    def __init__(
        self,
        db_session: Session,
        queue_name: str,
        debounce_window_seconds: float = DEFAULT_DEBOUNCE_WINDOW_SECONDS,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        policy: RedeliveryPolicy = RedeliveryPolicy(),
        purge_cooldown_seconds: float = DEFAULT_PURGE_COOLDOWN_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the queue, creating its row if needed.

        Args:
            db_session: Database session
            queue_name: Queue name
            debounce_window_seconds: Quiet window before a partial batch is delivered
            max_batch_size: Messages per batch (delivered immediately when reached)
            policy: Redelivery / dead-letter policy
            purge_cooldown_seconds: Minimum interval between purges
            clock: Time source (defaults to utcnow)

        Raises:
            ValueError: If queue_name is empty or sizes are invalid
        """
        if not queue_name:
            raise ValueError("queue_name is required")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if debounce_window_seconds < 0:
            raise ValueError("debounce_window_seconds must be non-negative")

        self.db = db_session
        self.queue_name = queue_name
        self.debounce_window = timedelta(seconds=debounce_window_seconds)
        self.max_batch_size = max_batch_size
        self.policy = policy
        self.purge_cooldown = timedelta(seconds=purge_cooldown_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._ensure_queue()

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _ensure_queue(self) -> BufferQueue:
        queue = self.db.get(BufferQueue, self.queue_name)
        if queue is None:
            queue = BufferQueue(name=self.queue_name, created_at=self._now())
            self.db.add(queue)
            self.db.commit()
        return queue

    def _messages(self):
        return self.db.query(BufferedMessage).filter(
            BufferedMessage.queue_name == self.queue_name
        )

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def send(self, body: str, delay_seconds: float = 0) -> str:
        """
        Enqueue a message.

        Args:
            body: Message body
            delay_seconds: Seconds before the message becomes visible

        Returns:
            Message identifier
        """
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be non-negative")

        now = self._now()
        message = BufferedMessage(
            message_id=str(uuid.uuid4()),
            queue_name=self.queue_name,
            body=body,
            sent_at=now,
            visible_at=now + timedelta(seconds=delay_seconds),
            receive_count=0,
        )
        self.db.add(message)
        self.db.commit()

        logger.debug(
            "buffer_queue.message_sent",
            extra={
                "queue_name": self.queue_name,
                "message_id": message.message_id,
                "delay_seconds": delay_seconds,
            },
        )
        return message.message_id

    def send_change(
        self,
        object_key: str,
        event_kind: EventKind = EventKind.CREATED,
        bucket: Optional[str] = None,
    ) -> str:
        """
        Enqueue a store change notification in EventBridge S3 event format.

        Args:
            object_key: Changed object key
            event_kind: CREATED or DELETED
            bucket: Bucket name

        Returns:
            Message identifier
        """
        if event_kind not in _DETAIL_TYPES:
            raise ValueError(f"Unsupported change kind: {event_kind.value}")

        body = json.dumps(
            {
                "version": "0",
                "id": str(uuid.uuid4()),
                "detail-type": _DETAIL_TYPES[event_kind],
                "source": "aws.s3",
                "time": self._now().isoformat(),
                "detail": {
                    "bucket": {"name": bucket or "local"},
                    "object": {"key": object_key},
                },
            }
        )
        return self.send(body)

    def enqueue_retry_token(self, token: RetryToken, delay_seconds: int) -> str:
        message_id = self.send(token.to_body(), delay_seconds=delay_seconds)
        logger.info(
            "buffer_queue.retry_token_enqueued",
            extra={
                "queue_name": self.queue_name,
                "message_id": message_id,
                "delay_seconds": delay_seconds,
                "observed_job_id": token.observed_job_id,
            },
        )
        return message_id

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def receive_batch(self) -> list[ReceivedMessage]:
        """
        Deliver the next batch if the debounce rule allows it.

        Visible messages that already used up their deliveries are moved to
        the dead letter sink instead of being delivered again.

        Returns:
            Delivered messages (empty while debouncing or when idle)
        """
        now = self._now()
        self._dead_letter_exhausted(now)

        visible = (
            self._messages()
            .filter(BufferedMessage.visible_at <= now)
            .order_by(BufferedMessage.visible_at.asc(), BufferedMessage.sent_at.asc())
            .limit(self.max_batch_size)
            .all()
        )
        if not visible:
            return []

        oldest_visible_at = as_utc(visible[0].visible_at)
        if len(visible) < self.max_batch_size and now - oldest_visible_at < self.debounce_window:
            return []

        visibility_deadline = now + timedelta(seconds=self.policy.redelivery_interval_seconds)
        received = []
        for message in visible:
            message.mark_received(str(uuid.uuid4()), now, visibility_deadline)
            received.append(
                ReceivedMessage(
                    message_id=message.message_id,
                    body=message.body,
                    receipt_handle=message.receipt_handle,
                    receive_count=message.receive_count,
                    sent_at=as_utc(message.sent_at),
                )
            )
        self.db.commit()

        logger.info(
            "buffer_queue.batch_delivered",
            extra={
                "queue_name": self.queue_name,
                "batch_size": len(received),
                "max_receive_count_in_batch": max(m.receive_count for m in received),
            },
        )
        return received

    def acknowledge(self, receipt_handles: Iterable[str]) -> int:
        """
        Delete delivered messages.

        Stale or unknown handles (e.g. messages removed by a purge) are ignored.

        Returns:
            Number of messages deleted
        """
        handles = list(receipt_handles)
        if not handles:
            return 0

        deleted = (
            self._messages()
            .filter(BufferedMessage.receipt_handle.in_(handles))
            .delete(synchronize_session=False)
        )
        self.db.commit()

        logger.debug(
            "buffer_queue.acknowledged",
            extra={"queue_name": self.queue_name, "deleted": deleted, "handles": len(handles)},
        )
        return deleted

    def fail(
        self,
        receipt_handles: Iterable[str],
        error_message: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
    ) -> int:
        """
        Return delivered messages to the queue after a handler failure.

        Each message becomes visible again after the redelivery interval, or
        is moved to the dead letter sink once its deliveries are exhausted.

        Returns:
            Number of messages dead-lettered
        """
        handles = list(receipt_handles)
        if not handles:
            return 0

        now = self._now()
        messages = (
            self._messages()
            .filter(BufferedMessage.receipt_handle.in_(handles))
            .all()
        )

        dead_lettered = 0
        for message in messages:
            decision = should_redeliver(message.receive_count, self.policy, now=now)
            log_redelivery_decision(
                message.message_id,
                message.receive_count,
                decision,
                error_category=error_category,
            )
            if decision.move_to_dlq:
                self._move_to_dead_letter(message, now, error_message)
                dead_lettered += 1
            else:
                message.visible_at = decision.next_visible_at

        self.db.commit()
        return dead_lettered

    def _dead_letter_exhausted(self, now: datetime) -> None:
        """Dead-letter visible messages whose in-flight delivery expired on the last attempt."""
        exhausted = (
            self._messages()
            .filter(
                BufferedMessage.visible_at <= now,
                BufferedMessage.receive_count >= self.policy.max_receive_count,
            )
            .all()
        )
        for message in exhausted:
            self._move_to_dead_letter(message, now, "Visibility timeout expired on final delivery")
        if exhausted:
            self.db.commit()

    def _move_to_dead_letter(
        self,
        message: BufferedMessage,
        now: datetime,
        error_message: Optional[str],
    ) -> None:
        self.db.add(DeadLetterMessage.from_message(message, now, error_message))
        self.db.delete(message)
        logger.warning(
            "buffer_queue.dead_lettered",
            extra={
                "queue_name": self.queue_name,
                "message_id": message.message_id,
                "receive_count": message.receive_count,
                "error_message": error_message,
            },
        )

    # ------------------------------------------------------------------
    # Introspection and maintenance
    # ------------------------------------------------------------------

    def get_depth(self) -> QueueDepth:
        now = self._now()
        visible = self._messages().filter(BufferedMessage.visible_at <= now).count()
        delayed = (
            self._messages()
            .filter(BufferedMessage.visible_at > now, BufferedMessage.receive_count == 0)
            .count()
        )
        in_flight = (
            self._messages()
            .filter(BufferedMessage.visible_at > now, BufferedMessage.receive_count > 0)
            .count()
        )
        return QueueDepth(visible=visible, delayed=delayed, in_flight=in_flight)

    def purge(self) -> None:
        """
        Delete every message not yet delivered (visible or delayed).

        In-flight messages keep their receipt handles, so the batch being
        handled can still be acknowledged or failed.

        Raises:
            QueuePurgeInProgressError: If the previous purge is within the cooldown
        """
        now = self._now()
        queue = self._ensure_queue()
        last_purged_at = as_utc(queue.last_purged_at)

        if last_purged_at is not None and now - last_purged_at < self.purge_cooldown:
            retry_after = (last_purged_at + self.purge_cooldown - now).total_seconds()
            raise QueuePurgeInProgressError(
                f"Queue {self.queue_name} was purged {int((now - last_purged_at).total_seconds())}s ago",
                retry_after_seconds=retry_after,
            )

        deleted = (
            self._messages()
            .filter(
                or_(
                    BufferedMessage.visible_at <= now,
                    BufferedMessage.receive_count == 0,
                )
            )
            .delete(synchronize_session=False)
        )
        queue.last_purged_at = now
        self.db.commit()

        logger.info(
            "buffer_queue.purged",
            extra={"queue_name": self.queue_name, "deleted": deleted},
        )

    def list_dead_letters(self, limit: int = 100) -> list[DeadLetterMessage]:
        """Dead letters for this queue, newest first, for manual inspection."""
        return (
            self.db.query(DeadLetterMessage)
            .filter(DeadLetterMessage.source_queue == self.queue_name)
            .order_by(DeadLetterMessage.dead_lettered_at.desc())
            .limit(limit)
            .all()
        )

    def count_dead_letters(self) -> int:
        return (
            self.db.query(func.count(DeadLetterMessage.message_id))
            .filter(DeadLetterMessage.source_queue == self.queue_name)
            .scalar()
        )

    def expire_dead_letters(self) -> int:
        """
        Delete dead letters older than the retention period.

        Returns:
            Number of dead letters deleted
        """
        cutoff = self._now() - self.policy.dead_letter_retention
        deleted = (
            self.db.query(DeadLetterMessage)
            .filter(
                DeadLetterMessage.source_queue == self.queue_name,
                DeadLetterMessage.dead_lettered_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()

        if deleted:
            logger.info(
                "buffer_queue.dead_letters_expired",
                extra={"queue_name": self.queue_name, "deleted": deleted},
            )
        return deleted
