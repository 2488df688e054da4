"""
Failure classification and redelivery policy for coordinator batches.

Implements queue-mediated failure handling:
- Status query / job start failures -> invocation fails, batch redelivered
- Purge failures -> logged and swallowed by the coordinator
- After max deliveries (10) without acknowledgment -> dead letter sink
- Dead letters retained for a bounded period (14 days), never reprocessed

Redelivery uses a fixed interval (the queue's visibility timeout), not
exponential backoff: every redelivered batch carries the same information.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# Redelivery configuration constants
MAX_RECEIVE_COUNT = 10
REDELIVERY_INTERVAL_SECONDS = 300.0
DEAD_LETTER_RETENTION_DAYS = 14

_AUTH_CODES = {
    "AccessDeniedException",
    "AccessDenied",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredTokenException",
    "KMS.AccessDeniedException",
}
_RATE_LIMIT_CODES = {
    "ThrottlingException",
    "Throttling",
    "TooManyRequestsException",
    "RequestThrottled",
    "ServiceQuotaExceededException",
    "RequestThrottledException",
}
_SERVER_CODES = {
    "InternalServerException",
    "InternalFailure",
    "ServiceUnavailable",
    "ServiceUnavailableException",
}
_PURGE_COOLDOWN_CODES = {
    "AWS.SimpleQueueService.PurgeQueueInProgress",
    "PurgeQueueInProgress",
}


class ErrorCategory(str, Enum):
    """Error classification for logging and redelivery decisions."""
    AUTH_ERROR = "auth_error"  # Credentials/permissions - redelivery will not help
    RATE_LIMIT = "rate_limit"  # Throttled by the service
    SERVER_ERROR = "server_error"  # 5xx from the service
    TIMEOUT = "timeout"  # Connect/read timeout
    CONNECTION = "connection"  # Network errors
    CONFLICT = "conflict"  # Service refused a concurrent operation
    PURGE_COOLDOWN = "purge_cooldown"  # Purge attempted inside the cooldown window
    NOT_FOUND = "not_found"  # Queue / knowledge base / data source missing
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RedeliveryPolicy:
    """
    Redelivery policy configuration.

    Attributes:
        max_receive_count: Deliveries without acknowledgment before dead-lettering
        redelivery_interval_seconds: Delay before a failed batch is visible again
        dead_letter_retention_days: How long dead letters are kept for inspection
    """
    max_receive_count: int = MAX_RECEIVE_COUNT
    redelivery_interval_seconds: float = REDELIVERY_INTERVAL_SECONDS
    dead_letter_retention_days: int = DEAD_LETTER_RETENTION_DAYS

    @property
    def dead_letter_retention(self) -> timedelta:
        return timedelta(days=self.dead_letter_retention_days)


@dataclass
class RedeliveryDecision:
    """
    Result of redelivery evaluation for one failed message.

    Attributes:
        should_redeliver: Whether the message becomes visible again
        next_visible_at: When it becomes visible (if redelivered)
        move_to_dlq: Whether to move it to the dead letter sink
        reason: Human-readable explanation
    """
    should_redeliver: bool
    next_visible_at: Optional[datetime]
    move_to_dlq: bool
    reason: str


def categorize_error(
    status_code: Optional[int] = None,
    error_code: Optional[str] = None,
    error_type: Optional[str] = None,
) -> ErrorCategory:
    """
    Categorize a dependency failure.

    Args:
        status_code: HTTP status code (if available)
        error_code: AWS error code (e.g. "ThrottlingException")
        error_type: Error type string for non-HTTP errors

    Returns:
        ErrorCategory for the error
    """
    if error_code:
        if error_code in _PURGE_COOLDOWN_CODES:
            return ErrorCategory.PURGE_COOLDOWN
        if error_code in _AUTH_CODES:
            return ErrorCategory.AUTH_ERROR
        if error_code in _RATE_LIMIT_CODES:
            return ErrorCategory.RATE_LIMIT
        if error_code in _SERVER_CODES:
            return ErrorCategory.SERVER_ERROR
        if error_code == "ConflictException":
            return ErrorCategory.CONFLICT
        if error_code in (
            "ResourceNotFoundException",
            "AWS.SimpleQueueService.NonExistentQueue",
            "QueueDoesNotExist",
        ):
            return ErrorCategory.NOT_FOUND

    if status_code is not None:
        if status_code in (401, 403):
            return ErrorCategory.AUTH_ERROR
        if status_code == 404:
            return ErrorCategory.NOT_FOUND
        if status_code == 409:
            return ErrorCategory.CONFLICT
        if status_code == 429:
            return ErrorCategory.RATE_LIMIT
        if 500 <= status_code < 600:
            return ErrorCategory.SERVER_ERROR

    if error_type:
        error_lower = error_type.lower()
        if "timeout" in error_lower:
            return ErrorCategory.TIMEOUT
        if "connection" in error_lower or "network" in error_lower or "endpoint" in error_lower:
            return ErrorCategory.CONNECTION
        if "throttl" in error_lower or "rate" in error_lower:
            return ErrorCategory.RATE_LIMIT

    return ErrorCategory.UNKNOWN


def should_redeliver(
    receive_count: int,
    policy: RedeliveryPolicy = RedeliveryPolicy(),
    now: Optional[datetime] = None,
) -> RedeliveryDecision:
    """
    Determine whether a failed message is redelivered or dead-lettered.

    Args:
        receive_count: Deliveries so far, including the one that just failed
        policy: Redelivery policy configuration
        now: Current time (defaults to utcnow)

    Returns:
        RedeliveryDecision with redeliver/DLQ recommendation
    """
    if receive_count >= policy.max_receive_count:
        return RedeliveryDecision(
            should_redeliver=False,
            next_visible_at=None,
            move_to_dlq=True,
            reason=f"Max deliveries ({policy.max_receive_count}) exceeded",
        )

    now = now or datetime.now(timezone.utc)
    return RedeliveryDecision(
        should_redeliver=True,
        next_visible_at=now + timedelta(seconds=policy.redelivery_interval_seconds),
        move_to_dlq=False,
        reason=(
            f"Redeliver in {policy.redelivery_interval_seconds:.0f}s "
            f"(delivery {receive_count}/{policy.max_receive_count})"
        ),
    )


def log_redelivery_decision(
    message_id: str,
    receive_count: int,
    decision: RedeliveryDecision,
    error_category: Optional[ErrorCategory] = None,
) -> None:
    """
    Log redelivery decision for observability.

    Args:
        message_id: Queue message identifier
        receive_count: Deliveries so far
        decision: Redelivery decision made
        error_category: Classified failure, when known
    """
    log_extra = {
        "message_id": message_id,
        "receive_count": receive_count,
        "should_redeliver": decision.should_redeliver,
        "move_to_dlq": decision.move_to_dlq,
        "reason": decision.reason,
    }
    if error_category is not None:
        log_extra["error_category"] = error_category.value
    if decision.next_visible_at:
        log_extra["next_visible_at"] = decision.next_visible_at.isoformat()

    if decision.move_to_dlq:
        logger.warning("Message moved to dead letter sink", extra=log_extra)
    else:
        logger.info("Message scheduled for redelivery", extra=log_extra)
