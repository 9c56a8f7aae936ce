"""Generation job API endpoints.

- POST /jobs - Enqueue a generation request
- GET /jobs/{idempotency_key} - Job state, provider attempts and artifact
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storyforge.api.dependencies import get_pipeline
from storyforge.models.job import Capability, GenerationMode, JobState
from storyforge.models.provider_attempt import AttemptOutcome
from storyforge.pipeline import Pipeline
from storyforge.schemas.payload import GenerationPayload, derive_idempotency_key
from storyforge.services.exceptions import LedgerUnavailable, QueueUnavailable

logger = structlog.get_logger()
router = APIRouter(prefix="/jobs", tags=["jobs"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateJobRequest(GenerationPayload):
    """Queue payload with an optional idempotency key.

    When the key is omitted it is derived from the target entity and the
    request content, so resubmitting the same request maps to the same job.
    """

    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)
    delay_seconds: float = Field(default=0, ge=0, le=3600)

    def to_payload(self) -> GenerationPayload:
        key = self.idempotency_key or derive_idempotency_key(
            self.mode,
            self.prompt,
            entity_id=self.scene_id or self.character_id or self.storyboard_id,
            reference_media_ref=self.reference_media_ref,
        )
        fields = self.model_dump(exclude={"delay_seconds", "idempotency_key"})
        return GenerationPayload(idempotency_key=key, **fields)


class CreateJobResponse(_CamelModel):
    message_id: int
    idempotency_key: str


class AttemptDTO(_CamelModel):
    sequence: int
    model: str
    started_at: datetime
    duration_ms: int
    outcome: AttemptOutcome
    error_detail: str | None = None


class ArtifactDTO(_CamelModel):
    media_type: str
    storage_ref: str
    public_url: str | None = None
    size_bytes: int
    created_at: datetime


class JobStatusResponse(_CamelModel):
    job_id: UUID
    idempotency_key: str
    mode: GenerationMode
    capability: Capability
    state: JobState
    chain_runs: int
    result: str | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    attempts: list[AttemptDTO]
    artifact: ArtifactDTO | None = None


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    request: CreateJobRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> CreateJobResponse:
    """Enqueue a generation request.

    The job row is created when a consumer first claims the message, so
    enqueueing the same key twice is harmless: the second message is acked as
    a duplicate once the first one has finished.

    Raises:
        HTTPException: 503 if the queue backend is unavailable
    """
    payload = request.to_payload()
    try:
        message_id = await pipeline.enqueue(payload, delay=request.delay_seconds)
    except QueueUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Queue unavailable: {e}",
        ) from e

    return CreateJobResponse(message_id=message_id, idempotency_key=payload.idempotency_key)


@router.get("/{idempotency_key}", response_model=JobStatusResponse)
async def get_job(
    idempotency_key: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> JobStatusResponse:
    """Get a job by idempotency key.

    Raises:
        HTTPException: 404 if no job exists yet (not claimed or unknown key),
            503 if the ledger is unavailable
    """
    try:
        job = await pipeline.ledger.get_by_key(idempotency_key)
        if job is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Job {idempotency_key} not found",
            )
        attempts = await pipeline.ledger.list_attempts(job.id)
        artifact = await pipeline.artifacts.get(job.id)
    except LedgerUnavailable as e:
        logger.error("jobs.status_failed", idempotency_key=idempotency_key, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Job ledger unavailable: {e}",
        ) from e

    return JobStatusResponse(
        job_id=job.id,
        idempotency_key=job.idempotency_key,
        mode=job.mode,
        capability=job.capability,
        state=job.state,
        chain_runs=job.chain_runs,
        result=job.result,
        last_error=job.last_error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        attempts=[
            AttemptDTO(
                sequence=a.sequence,
                model=a.model,
                started_at=a.started_at,
                duration_ms=a.duration_ms,
                outcome=a.outcome,
                error_detail=a.error_detail,
            )
            for a in attempts
        ],
        artifact=ArtifactDTO(
            media_type=artifact.media_type,
            storage_ref=artifact.storage_ref,
            public_url=artifact.public_url,
            size_bytes=artifact.size_bytes,
            created_at=artifact.created_at,
        )
        if artifact
        else None,
    )
