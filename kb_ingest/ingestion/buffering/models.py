"""
Local buffering queue models.

Persists the buffering queue contract in a relational store:
- BufferQueue: one row per queue, tracks the purge cooldown
- BufferedMessage: undelivered, delayed and in-flight messages
- DeadLetterMessage: messages that exhausted their deliveries

A message is:
- delayed   when receive_count == 0 and visible_at > now
- visible   when visible_at <= now
- in flight when receive_count > 0 and visible_at > now
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from kb_ingest.database.base import Base


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BufferQueue(Base):
    """A named buffering queue."""

    __tablename__ = "buffer_queues"

    name = Column(
        String(255),
        primary_key=True,
        comment="Queue name"
    )
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the queue was created"
    )
    last_purged_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last successful purge, for the purge cooldown"
    )

    def __repr__(self) -> str:
        return f"<BufferQueue(name={self.name}, last_purged_at={self.last_purged_at})>"


class BufferedMessage(Base):
    """
    A message waiting in (or in flight from) a buffering queue.

    Attributes:
        message_id: Primary key (UUID)
        queue_name: Owning queue
        body: Raw message body
        sent_at: When the message was enqueued
        visible_at: When the message is (next) deliverable
        receive_count: Deliveries so far
        receipt_handle: Handle of the latest delivery (None before first delivery)
        first_received_at: First delivery time
    """

    __tablename__ = "buffered_messages"

    message_id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    queue_name = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning queue"
    )
    body = Column(
        Text,
        nullable=False,
        comment="Raw message body"
    )
    sent_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the message was enqueued"
    )
    visible_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the message becomes deliverable"
    )
    receive_count = Column(
        Integer,
        default=0,
        nullable=False,
        comment="Number of deliveries"
    )
    receipt_handle = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Receipt handle of the latest delivery"
    )
    first_received_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the message was first delivered"
    )

    __table_args__ = (
        # Delivery order within a queue
        Index("ix_buffered_messages_queue_visible", "queue_name", "visible_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BufferedMessage("
            f"message_id={self.message_id}, "
            f"queue_name={self.queue_name}, "
            f"receive_count={self.receive_count}"
            f")>"
        )

    def mark_received(self, receipt_handle: str, now: datetime, visible_at: datetime) -> None:
        """Record a delivery and hide the message until visible_at."""
        self.receive_count = (self.receive_count or 0) + 1
        self.receipt_handle = receipt_handle
        self.visible_at = visible_at
        if self.first_received_at is None:
            self.first_received_at = now


class DeadLetterMessage(Base):
    """
    A message moved to the dead letter sink.

    Retained for manual inspection only; never redelivered automatically.
    """

    __tablename__ = "dead_letter_messages"

    message_id = Column(
        String(255),
        primary_key=True,
        comment="Original message ID"
    )
    source_queue = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Queue the message was dead-lettered from"
    )
    body = Column(
        Text,
        nullable=False,
        comment="Original body, unmodified"
    )
    sent_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the message was originally enqueued"
    )
    receive_count = Column(
        Integer,
        nullable=False,
        comment="Deliveries before dead-lettering"
    )
    dead_lettered_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="When the message was moved to the sink"
    )
    error_message = Column(
        Text,
        nullable=True,
        comment="Last failure, when known"
    )

    def __repr__(self) -> str:
        return (
            f"<DeadLetterMessage("
            f"message_id={self.message_id}, "
            f"source_queue={self.source_queue}, "
            f"receive_count={self.receive_count}"
            f")>"
        )

    @classmethod
    def from_message(
        cls,
        message: BufferedMessage,
        now: datetime,
        error_message: Optional[str] = None,
    ) -> "DeadLetterMessage":
        return cls(
            message_id=message.message_id,
            source_queue=message.queue_name,
            body=message.body,
            sent_at=message.sent_at,
            receive_count=message.receive_count,
            dead_lettered_at=now,
            error_message=error_message,
        )
