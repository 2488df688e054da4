"""
Local buffering queue.

A database-backed reimplementation of the buffering queue used when the
coordinator runs outside Lambda/SQS (local worker, tests).
"""

from kb_ingest.ingestion.buffering.models import (
    BufferQueue,
    BufferedMessage,
    DeadLetterMessage,
)
from kb_ingest.ingestion.buffering.queue import ReceivedMessage, SqlBufferingQueue

__all__ = [
    "BufferQueue",
    "BufferedMessage",
    "DeadLetterMessage",
    "ReceivedMessage",
    "SqlBufferingQueue",
]
