"""
Lambda entry point for the ingestion job coordinator.

Triggered by the SQS event source mapping of the buffering queue with:
- batch size 10 and a batching window equal to the debounce window
- reserved concurrency of exactly 1 (single-flight precondition)
- a redrive policy of 10 receives to the dead letter queue

Returning normally deletes the whole batch. Raising makes every message in
the batch visible again after the visibility timeout.

Usage (function handler setting):
    kb_ingest.handlers.coordinator_handler.lambda_handler
"""

import logging
from threading import Lock
from typing import Any, Optional

from kb_ingest.config.coordinator_settings import (
    CoordinatorSettings,
    get_coordinator_settings,
)
from kb_ingest.ingestion.events import parse_sqs_event
from kb_ingest.ingestion.jobs.coordinator import IngestionJobCoordinator
from kb_ingest.ingestion.jobs.retry import categorize_error
from kb_ingest.integrations.bedrock.client import BedrockIngestionClient
from kb_ingest.integrations.sqs.client import SqsQueueClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reused across warm invocations of the same container
_coordinator: Optional[IngestionJobCoordinator] = None
_coordinator_lock = Lock()


def build_coordinator(settings: CoordinatorSettings) -> IngestionJobCoordinator:
    """
    Build the coordinator with Bedrock and SQS collaborators.

    Raises:
        ConfigurationError: If knowledge base, data source or queue URL is missing
    """
    settings.require("knowledge_base_id", "data_source_id", "queue_url")

    ingestion = BedrockIngestionClient(
        knowledge_base_id=settings.knowledge_base_id,
        data_source_id=settings.data_source_id,
        region_name=settings.aws_region,
    )
    queue = SqsQueueClient(queue_url=settings.queue_url, region_name=settings.aws_region)

    return IngestionJobCoordinator(
        status_source=ingestion,
        job_starter=ingestion,
        queue=queue,
        retry_delay_seconds=settings.retry_delay_seconds,
    )


def get_coordinator() -> IngestionJobCoordinator:
    """Get or build the container-wide coordinator."""
    global _coordinator
    if _coordinator is None:
        with _coordinator_lock:
            if _coordinator is None:
                settings = get_coordinator_settings()
                logging.getLogger().setLevel(settings.log_level.upper())
                _coordinator = build_coordinator(settings)
    return _coordinator


def reset_coordinator() -> None:
    """Drop the cached coordinator (tests, settings reload)."""
    global _coordinator
    with _coordinator_lock:
        _coordinator = None


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Handle one SQS batch of change notifications.

    Args:
        event: Lambda SQS event
        context: Lambda context

    Returns:
        CoordinatorResult as a dict (observability only)

    Raises:
        Exception: Any status/start/enqueue failure, so the batch is redelivered
    """
    settings = get_coordinator_settings()
    batch = parse_sqs_event(event, max_batch_size=settings.max_batch_size)
    request_id = getattr(context, "aws_request_id", None)

    logger.info(
        "coordinator_handler.invoked",
        extra={
            "request_id": request_id,
            "batch_size": len(batch),
            "kind_counts": batch.kind_counts(),
        },
    )

    try:
        result = get_coordinator().handle_batch(batch)
    except Exception as e:
        category = getattr(e, "category", None) or categorize_error(error_type=type(e).__name__)
        logger.error(
            "coordinator_handler.invocation_failed",
            extra={
                "request_id": request_id,
                "batch_size": len(batch),
                "error_type": type(e).__name__,
                "error_category": category.value,
                "error": str(e),
            },
        )
        raise

    return result.to_dict()
