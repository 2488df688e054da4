"""
Bedrock knowledge-base ingestion client.

Implements the ingestion service contract consumed by the coordinator:
- get_latest_job(): status of the most recent ingestion job for the data source
- start_job(): asynchronously start a full re-scan of the data source

The service does not reject a start while a job is running for every
deployment, so callers must perform their own single-flight check.

SECURITY: AWS credentials come from the default boto3 credential chain and
are never logged.
"""

import logging
import uuid
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kb_ingest.ingestion.jobs.interfaces import JobStarter, JobStatusSource
from kb_ingest.ingestion.jobs.models import IngestionJobSnapshot, IngestionJobStatus
from kb_ingest.integrations.bedrock.exceptions import (
    BedrockIngestionError,
    translate_boto_error,
)

logger = logging.getLogger(__name__)

JOB_DESCRIPTION = "Triggered by knowledge-base change notifications"


def snapshot_from_job(job: dict[str, Any]) -> IngestionJobSnapshot:
    """
    Build an IngestionJobSnapshot from an ingestion job (or job summary) payload.

    Raises:
        BedrockIngestionError: If the payload carries an unknown status
    """
    try:
        status = IngestionJobStatus.parse(job.get("status"))
    except ValueError as e:
        raise BedrockIngestionError(str(e), code="UnknownStatus")

    return IngestionJobSnapshot(
        job_id=job.get("ingestionJobId"),
        status=status,
        started_at=job.get("startedAt"),
        updated_at=job.get("updatedAt"),
    )


class BedrockIngestionClient(JobStatusSource, JobStarter):
    """
    Ingestion service adapter over the bedrock-agent API.

    Scoped to one knowledge base + data source pair.
    """

    def __init__(
        self,
        knowledge_base_id: str,
        data_source_id: str,
        client: Optional[Any] = None,
        region_name: Optional[str] = None,
        description: str = JOB_DESCRIPTION,
    ):
        """
        Initialize Bedrock ingestion client.

        Args:
            knowledge_base_id: Knowledge base identifier
            data_source_id: Data source identifier within the knowledge base
            client: Optional boto3 bedrock-agent client (created lazily if not provided)
            region_name: AWS region for the default client
            description: Description attached to started jobs

        Raises:
            ValueError: If knowledge_base_id or data_source_id is empty
        """
        if not knowledge_base_id:
            raise ValueError("knowledge_base_id is required")
        if not data_source_id:
            raise ValueError("data_source_id is required")

        self.knowledge_base_id = knowledge_base_id
        self.data_source_id = data_source_id
        self.description = description
        self._client = client
        self._region_name = region_name

    def _get_client(self):
        """Get or create the boto3 bedrock-agent client."""
        if self._client is None:
            self._client = boto3.client("bedrock-agent", region_name=self._region_name)
        return self._client

    def get_latest_job(self) -> IngestionJobSnapshot:
        """
        Get the most recently started ingestion job.

        Returns:
            Snapshot of the latest job, or a NOT_STARTED snapshot if none exist

        Raises:
            BedrockIngestionError: On any API failure
        """
        try:
            response = self._get_client().list_ingestion_jobs(
                knowledgeBaseId=self.knowledge_base_id,
                dataSourceId=self.data_source_id,
                maxResults=1,
                sortBy={"attribute": "STARTED_AT", "order": "DESCENDING"},
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_boto_error(e, "ListIngestionJobs") from e

        summaries = response.get("ingestionJobSummaries") or []
        if not summaries:
            logger.debug(
                "bedrock.no_ingestion_jobs",
                extra={
                    "knowledge_base_id": self.knowledge_base_id,
                    "data_source_id": self.data_source_id,
                },
            )
            return IngestionJobSnapshot.not_started()

        return snapshot_from_job(summaries[0])

    def start_job(self) -> IngestionJobSnapshot:
        """
        Start a new ingestion job over the whole data source.

        Each call uses a fresh client token, so a redelivered batch that
        retries a failed start is not deduplicated against an earlier one.

        Returns:
            Snapshot of the new job with its initial status

        Raises:
            BedrockIngestionError: On any API failure
        """
        client_token = str(uuid.uuid4())
        try:
            response = self._get_client().start_ingestion_job(
                knowledgeBaseId=self.knowledge_base_id,
                dataSourceId=self.data_source_id,
                clientToken=client_token,
                description=self.description,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_boto_error(e, "StartIngestionJob") from e

        snapshot = snapshot_from_job(response.get("ingestionJob") or {})
        if not snapshot.job_id:
            raise BedrockIngestionError(
                "StartIngestionJob returned no ingestionJobId",
                code="MissingJobId",
            )

        logger.info(
            "bedrock.ingestion_job_started",
            extra={
                "job_id": snapshot.job_id,
                "status": snapshot.status.value,
                "knowledge_base_id": self.knowledge_base_id,
                "data_source_id": self.data_source_id,
            },
        )
        return snapshot
