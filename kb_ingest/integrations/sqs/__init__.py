"""
SQS buffering queue integration.

Provides the queue adapter (depth, purge, delayed enqueue) and the queue
exception hierarchy shared with the local buffering queue.
"""

from kb_ingest.integrations.sqs.client import SqsQueueClient
from kb_ingest.integrations.sqs.exceptions import (
    QueueError,
    QueuePurgeInProgressError,
    QueueNotFoundError,
    QueueAccessError,
)

__all__ = [
    "SqsQueueClient",
    "QueueError",
    "QueuePurgeInProgressError",
    "QueueNotFoundError",
    "QueueAccessError",
]
