"""
Bedrock ingestion-specific exceptions for error handling.
"""

from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from kb_ingest.ingestion.jobs.retry import ErrorCategory, categorize_error


class BedrockIngestionError(Exception):
    """Base exception for Bedrock ingestion API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.category = category

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(message={self.message!r}, "
            f"status_code={self.status_code}, code={self.code!r})"
        )


class BedrockAuthenticationError(BedrockIngestionError):
    """Raised when credentials or permissions are rejected."""


class BedrockThrottlingError(BedrockIngestionError):
    """Raised when the service throttles the request."""


class BedrockConflictError(BedrockIngestionError):
    """Raised when the service refuses an operation that conflicts with a running job."""


class BedrockNotFoundError(BedrockIngestionError):
    """Raised when the knowledge base or data source does not exist."""


class BedrockServiceError(BedrockIngestionError):
    """Raised on server-side, timeout or network failures."""


_CATEGORY_EXCEPTIONS = {
    ErrorCategory.AUTH_ERROR: BedrockAuthenticationError,
    ErrorCategory.RATE_LIMIT: BedrockThrottlingError,
    ErrorCategory.CONFLICT: BedrockConflictError,
    ErrorCategory.NOT_FOUND: BedrockNotFoundError,
    ErrorCategory.SERVER_ERROR: BedrockServiceError,
    ErrorCategory.TIMEOUT: BedrockServiceError,
    ErrorCategory.CONNECTION: BedrockServiceError,
}


def translate_boto_error(error: Exception, operation: str) -> BedrockIngestionError:
    """
    Translate a botocore error into the Bedrock exception hierarchy.

    Args:
        error: Exception raised by the boto3 client
        operation: API operation name, for the message

    Returns:
        BedrockIngestionError subclass matching the error category
    """
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code")
        status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        category = categorize_error(status_code=status_code, error_code=code)
        message = f"{operation} failed: {details.get('Message') or code}"
    elif isinstance(error, BotoCoreError):
        code = None
        status_code = None
        category = categorize_error(error_type=type(error).__name__)
        message = f"{operation} failed: {error}"
    else:
        code = None
        status_code = None
        category = ErrorCategory.UNKNOWN
        message = f"{operation} failed: {error}"

    exc_class = _CATEGORY_EXCEPTIONS.get(category, BedrockIngestionError)
    return exc_class(message, status_code=status_code, code=code, category=category)
