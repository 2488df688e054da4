"""
Buffering queue exceptions.

Shared by the SQS adapter and the local buffering queue so that callers
handle both the same way.
"""

from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from kb_ingest.ingestion.jobs.retry import ErrorCategory, categorize_error


class QueueError(Exception):
    """Base exception for buffering queue errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, code={self.code!r})"


class QueuePurgeInProgressError(QueueError):
    """Raised when a purge is requested inside the purge cooldown window."""

    def __init__(
        self,
        message: str = "Queue purge already in progress - retry after the cooldown",
        retry_after_seconds: Optional[float] = None,
        **kwargs,
    ):
        kwargs.setdefault("category", ErrorCategory.PURGE_COOLDOWN)
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class QueueNotFoundError(QueueError):
    """Raised when the queue does not exist."""


class QueueAccessError(QueueError):
    """Raised when credentials or permissions are rejected."""


def translate_boto_error(error: Exception, operation: str) -> QueueError:
    """
    Translate a botocore error into the queue exception hierarchy.

    Args:
        error: Exception raised by the boto3 client
        operation: API operation name, for the message

    Returns:
        QueueError subclass matching the error category
    """
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code")
        status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        category = categorize_error(status_code=status_code, error_code=code)
        message = f"{operation} failed: {details.get('Message') or code}"
    elif isinstance(error, BotoCoreError):
        code = None
        category = categorize_error(error_type=type(error).__name__)
        message = f"{operation} failed: {error}"
    else:
        code = None
        category = ErrorCategory.UNKNOWN
        message = f"{operation} failed: {error}"

    if category == ErrorCategory.PURGE_COOLDOWN:
        return QueuePurgeInProgressError(message, code=code)
    if category == ErrorCategory.NOT_FOUND:
        return QueueNotFoundError(message, code=code, category=category)
    if category == ErrorCategory.AUTH_ERROR:
        return QueueAccessError(message, code=code, category=category)
    return QueueError(message, code=code, category=category)
