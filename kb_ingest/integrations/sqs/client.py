"""
SQS buffering queue client.

Implements the queue operations the coordinator relies on:
- Depth introspection (visible, delayed, in-flight counts)
- Destructive purge (subject to the service's 60 second purge cooldown)
- Enqueue-with-delay for retry tokens

Debouncing, batching, redelivery and dead-lettering are configured on the
queue and its event source mapping, not performed here.
"""

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kb_ingest.ingestion.jobs.interfaces import CoordinatorQueue
from kb_ingest.ingestion.jobs.models import QueueDepth, RetryToken
from kb_ingest.integrations.sqs.exceptions import QueueError, translate_boto_error

logger = logging.getLogger(__name__)

# Service-side cap on per-message delay
MAX_DELAY_SECONDS = 900

DEPTH_ATTRIBUTES = [
    "ApproximateNumberOfMessages",
    "ApproximateNumberOfMessagesDelayed",
    "ApproximateNumberOfMessagesNotVisible",
]


class SqsQueueClient(CoordinatorQueue):
    """Buffering queue adapter over the SQS API."""

    def __init__(
        self,
        queue_url: str,
        client: Optional[Any] = None,
        region_name: Optional[str] = None,
    ):
        """
        Initialize SQS queue client.

        Args:
            queue_url: URL of the buffering queue
            client: Optional boto3 SQS client (created lazily if not provided)
            region_name: AWS region for the default client

        Raises:
            ValueError: If queue_url is empty
        """
        if not queue_url:
            raise ValueError("queue_url is required")

        self.queue_url = queue_url
        self._client = client
        self._region_name = region_name

    def _get_client(self):
        """Get or create the boto3 SQS client."""
        if self._client is None:
            self._client = boto3.client("sqs", region_name=self._region_name)
        return self._client

    def get_depth(self) -> QueueDepth:
        """
        Read approximate queue depth.

        Raises:
            QueueError: On any API failure
        """
        try:
            response = self._get_client().get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=DEPTH_ATTRIBUTES,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_boto_error(e, "GetQueueAttributes") from e

        attributes = response.get("Attributes", {})
        depth = QueueDepth(
            visible=int(attributes.get("ApproximateNumberOfMessages", 0)),
            delayed=int(attributes.get("ApproximateNumberOfMessagesDelayed", 0)),
            in_flight=int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )
        logger.debug(
            "sqs.queue_depth",
            extra={
                "visible": depth.visible,
                "delayed": depth.delayed,
                "in_flight": depth.in_flight,
            },
        )
        return depth

    def purge(self) -> None:
        """
        Purge every message in the queue.

        Raises:
            QueuePurgeInProgressError: If a purge ran within the last 60 seconds
            QueueError: On any other API failure
        """
        try:
            self._get_client().purge_queue(QueueUrl=self.queue_url)
        except (ClientError, BotoCoreError) as e:
            raise translate_boto_error(e, "PurgeQueue") from e

    def enqueue_retry_token(self, token: RetryToken, delay_seconds: int) -> str:
        """
        Send a retry token that becomes visible after delay_seconds.

        Raises:
            ValueError: If delay_seconds is outside [0, 900]
            QueueError: On any API failure
        """
        if not 0 <= delay_seconds <= MAX_DELAY_SECONDS:
            raise ValueError(
                f"delay_seconds must be between 0 and {MAX_DELAY_SECONDS}, got {delay_seconds}"
            )

        try:
            response = self._get_client().send_message(
                QueueUrl=self.queue_url,
                MessageBody=token.to_body(),
                DelaySeconds=delay_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_boto_error(e, "SendMessage") from e

        message_id = response.get("MessageId")
        if not message_id:
            raise QueueError("SendMessage returned no MessageId")

        logger.info(
            "sqs.retry_token_enqueued",
            extra={
                "message_id": message_id,
                "delay_seconds": delay_seconds,
                "observed_job_id": token.observed_job_id,
            },
        )
        return message_id
