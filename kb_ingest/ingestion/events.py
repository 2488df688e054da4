"""
Parsing of queue-delivered messages into notification batches.

Accepted message bodies:
- EventBridge S3 events ("Object Created" / "Object Deleted")
- Direct S3 event notifications (Records[].eventName "ObjectCreated:*" / "ObjectRemoved:*")
- Retry tokens enqueued by the coordinator
- Anything else, recorded as an UNKNOWN notification

Payloads are parsed for logging only. A body that fails to parse is still
evidence that something changed and never fails the batch.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Optional
from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kb_ingest.ingestion.jobs.models import (
    RETRY_TOKEN_KIND,
    ChangeNotification,
    EventKind,
    NotificationBatch,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 10

_EVENTBRIDGE_KINDS = {
    "Object Created": EventKind.CREATED,
    "Object Deleted": EventKind.DELETED,
}


class S3BucketRef(BaseModel):
    name: str


class S3ObjectRef(BaseModel):
    key: str
    size: Optional[int] = None


class EventBridgeS3Detail(BaseModel):
    bucket: S3BucketRef
    object_ref: S3ObjectRef = Field(..., alias="object")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class EventBridgeS3Event(BaseModel):
    """S3 event routed through EventBridge."""

    detail_type: str = Field(..., alias="detail-type")
    source: str = Field("aws.s3", description="Event source")
    time: Optional[datetime] = Field(None, description="Event time")
    detail: EventBridgeS3Detail

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class S3RecordEntity(BaseModel):
    bucket: S3BucketRef
    object_ref: S3ObjectRef = Field(..., alias="object")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class S3NotificationRecord(BaseModel):
    event_name: str = Field(..., alias="eventName")
    event_time: Optional[datetime] = Field(None, alias="eventTime")
    s3: S3RecordEntity

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class S3EventNotification(BaseModel):
    """Direct S3 -> SQS event notification."""

    records: list[S3NotificationRecord] = Field(..., alias="Records")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class RetryTokenBody(BaseModel):
    """Body of a coordinator-scheduled retry token."""

    kind: Literal["retry_token"]
    reason: Optional[str] = None
    observed_job_id: Optional[str] = None
    created_at: Optional[datetime] = None


def _s3_event_kind(event_name: str) -> EventKind:
    if event_name.startswith("ObjectCreated"):
        return EventKind.CREATED
    if event_name.startswith("ObjectRemoved") or event_name.startswith("LifecycleExpiration"):
        return EventKind.DELETED
    return EventKind.UNKNOWN


def parse_message_body(
    message_id: str,
    body: Optional[str],
    receipt_handle: Optional[str] = None,
    sent_at: Optional[datetime] = None,
) -> ChangeNotification:
    """
    Parse one queue message body into a ChangeNotification.

    Args:
        message_id: Queue message identifier
        body: Raw message body
        receipt_handle: Receipt handle for acknowledgment
        sent_at: Fallback timestamp when the body carries none

    Returns:
        ChangeNotification (UNKNOWN kind if the body is not recognised)
    """
    unknown = ChangeNotification(
        message_id=message_id,
        event_kind=EventKind.UNKNOWN,
        timestamp=sent_at,
        receipt_handle=receipt_handle,
    )

    try:
        payload = json.loads(body) if body else None
    except (TypeError, ValueError):
        logger.warning("events.unparseable_body", extra={"message_id": message_id})
        return unknown

    if not isinstance(payload, dict):
        logger.warning("events.unexpected_body", extra={"message_id": message_id})
        return unknown

    try:
        if payload.get("kind") == RETRY_TOKEN_KIND:
            token = RetryTokenBody.model_validate(payload)
            return ChangeNotification(
                message_id=message_id,
                event_kind=EventKind.RETRY,
                timestamp=token.created_at or sent_at,
                receipt_handle=receipt_handle,
            )

        if "detail-type" in payload:
            event = EventBridgeS3Event.model_validate(payload)
            return ChangeNotification(
                message_id=message_id,
                event_kind=_EVENTBRIDGE_KINDS.get(event.detail_type, EventKind.UNKNOWN),
                object_key=event.detail.object_ref.key,
                bucket=event.detail.bucket.name,
                timestamp=event.time or sent_at,
                receipt_handle=receipt_handle,
            )

        if "Records" in payload:
            notification = S3EventNotification.model_validate(payload)
            if not notification.records:
                return unknown
            record = notification.records[0]
            return ChangeNotification(
                message_id=message_id,
                event_kind=_s3_event_kind(record.event_name),
                # S3 notifications URL-encode keys
                object_key=unquote_plus(record.s3.object_ref.key),
                bucket=record.s3.bucket.name,
                timestamp=record.event_time or sent_at,
                receipt_handle=receipt_handle,
            )
    except ValidationError as e:
        logger.warning(
            "events.invalid_body",
            extra={"message_id": message_id, "errors": e.error_count()},
        )
        return unknown

    # s3:TestEvent and other bodies
    return unknown


def _sent_timestamp(record: dict[str, Any]) -> Optional[datetime]:
    sent = (record.get("attributes") or {}).get("SentTimestamp")
    if not sent:
        return None
    try:
        return datetime.fromtimestamp(int(sent) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_sqs_event(
    event: dict[str, Any],
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
) -> NotificationBatch:
    """
    Parse a Lambda SQS event into a NotificationBatch.

    Args:
        event: Lambda event ({"Records": [...]})
        max_batch_size: Expected upper bound on records

    Returns:
        NotificationBatch in delivery order
    """
    records = event.get("Records") or []
    if len(records) > max_batch_size:
        # Notifications are fungible, so an oversized batch is still handled
        logger.warning(
            "events.batch_exceeds_max_size",
            extra={"batch_size": len(records), "max_batch_size": max_batch_size},
        )

    return NotificationBatch(
        parse_message_body(
            message_id=record.get("messageId", ""),
            body=record.get("body"),
            receipt_handle=record.get("receiptHandle"),
            sent_at=_sent_timestamp(record),
        )
        for record in records
    )


def batch_from_messages(messages: Iterable[Any]) -> NotificationBatch:
    """
    Build a NotificationBatch from local buffering queue messages.

    Args:
        messages: Objects with message_id, body, receipt_handle, sent_at

    Returns:
        NotificationBatch in delivery order
    """
    return NotificationBatch(
        parse_message_body(
            message_id=message.message_id,
            body=message.body,
            receipt_handle=message.receipt_handle,
            sent_at=message.sent_at,
        )
        for message in messages
    )
