"""Queue processing API endpoints.

- POST /process - Run one processing pass (or drain) and return its summary
- GET /queue/metrics - Queue depth, in-flight and poisoned counts per queue, jobs per state

POST /process is the trigger target for the scheduler, database insert hooks
and manual calls. It answers 200 with a summary even when individual jobs
fail; 503 means the queue itself could not be reached.
"""

from datetime import datetime
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storyforge.api.dependencies import get_pipeline
from storyforge.core.clock import utcnow
from storyforge.models.job import Capability, JobState
from storyforge.pipeline import Pipeline
from storyforge.schemas.summary import PassSummary
from storyforge.services.exceptions import LedgerUnavailable, QueueUnavailable

logger = structlog.get_logger()
router = APIRouter(tags=["processing"])


class QueueMetricsDTO(BaseModel):
    """Point-in-time counters for one queue."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    queue_name: str
    queue_length: int = Field(..., description="Live (non-poisoned) messages")
    visible: int = Field(..., description="Messages claimable right now")
    in_flight: int = Field(..., description="Messages leased or waiting for a retry delay")
    poisoned: int = Field(..., description="Dead-lettered messages")
    oldest_message_age_seconds: float | None = None


class QueueMetricsResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    queues: list[QueueMetricsDTO]
    jobs: dict[JobState, int] = Field(..., description="Jobs per lifecycle state")
    scraped_at: datetime


@router.post("/process", response_model=PassSummary)
async def process_queue(
    mode: Literal["single", "drain"] = Query(default="single"),
    max_messages: int | None = Query(default=None, ge=1, le=100),
    max_wall_clock_seconds: float | None = Query(default=None, gt=0, le=3600),
    capability: Capability | None = Query(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> PassSummary:
    """Run a processing pass.

    Args:
        mode: "single" claims one batch, "drain" repeats passes until the queue is empty
        max_messages: Messages claimed per pass (default: capability batch size)
        max_wall_clock_seconds: Time budget (default: capability pass budget)
        capability: Only process this capability's queue (default: all)

    Returns:
        Summary counts (camelCase)

    Raises:
        HTTPException: 503 if the queue backend is unavailable
    """
    logger.info(
        "process.requested",
        mode=mode,
        max_messages=max_messages,
        max_wall_clock_seconds=max_wall_clock_seconds,
        capability=capability.value if capability else "all",
    )
    try:
        summary = await pipeline.run(
            mode=mode,
            capability=capability,
            max_messages=max_messages,
            max_wall_clock=max_wall_clock_seconds,
        )
    except QueueUnavailable as e:
        logger.error("process.queue_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Queue unavailable: {e}",
        ) from e

    return summary


@router.get("/queue/metrics", response_model=QueueMetricsResponse)
async def queue_metrics(pipeline: Pipeline = Depends(get_pipeline)) -> QueueMetricsResponse:
    """Report per-queue counters and job counts per state for monitoring."""
    try:
        metrics = await pipeline.metrics()
        jobs = await pipeline.job_counts()
    except QueueUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Queue unavailable: {e}",
        ) from e
    except LedgerUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Job ledger unavailable: {e}",
        ) from e

    return QueueMetricsResponse(
        queues=[
            QueueMetricsDTO(
                queue_name=m.queue_name,
                queue_length=m.queue_length,
                visible=m.visible,
                in_flight=m.in_flight,
                poisoned=m.poisoned,
                oldest_message_age_seconds=m.oldest_message_age_seconds,
            )
            for m in metrics
        ],
        jobs=jobs,
        scraped_at=utcnow(),
    )
