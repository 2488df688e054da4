"""
Bedrock knowledge-base integration.

Provides the ingestion service adapter (job status + job start) and its
exception hierarchy.
"""

from kb_ingest.integrations.bedrock.client import BedrockIngestionClient, snapshot_from_job
from kb_ingest.integrations.bedrock.exceptions import (
    BedrockIngestionError,
    BedrockAuthenticationError,
    BedrockThrottlingError,
    BedrockConflictError,
    BedrockNotFoundError,
    BedrockServiceError,
)

__all__ = [
    "BedrockIngestionClient",
    "snapshot_from_job",
    "BedrockIngestionError",
    "BedrockAuthenticationError",
    "BedrockThrottlingError",
    "BedrockConflictError",
    "BedrockNotFoundError",
    "BedrockServiceError",
]
