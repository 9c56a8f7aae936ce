"""Job entity - durable logical unit of generation work with lifecycle tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from storyforge.core.clock import utcnow


class Capability(str, Enum):
    """Kind of media a job produces."""

    IMAGE = "image"
    VIDEO = "video"


class GenerationMode(str, Enum):
    """Input/output combination requested by the storyboard client."""

    TEXT_TO_IMAGE = "text-to-image"
    IMAGE_TO_IMAGE = "image-to-image"
    TEXT_TO_VIDEO = "text-to-video"
    IMAGE_TO_VIDEO = "image-to-video"

    @property
    def capability(self) -> Capability:
        if self in (GenerationMode.TEXT_TO_IMAGE, GenerationMode.IMAGE_TO_IMAGE):
            return Capability.IMAGE
        return Capability.VIDEO

    @property
    def needs_reference(self) -> bool:
        return self in (GenerationMode.IMAGE_TO_IMAGE, GenerationMode.IMAGE_TO_VIDEO)


class JobState(str, Enum):
    """Job lifecycle state."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


class Job(SQLModel, table=True):
    """Job is keyed by the caller's idempotency key, not by the queue message id.

    Redelivery of a message, or a second message enqueued with the same key,
    resolves to the same row. State is only changed through compare-and-set
    updates in the ledger.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    idempotency_key: str = Field(unique=True, index=True, max_length=255)
    mode: GenerationMode
    capability: Capability = Field(index=True)
    inputs: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    state: JobState = Field(default=JobState.QUEUED, index=True)
    chain_runs: int = Field(default=0, ge=0)
    result: Optional[str] = Field(default=None, max_length=1024)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
