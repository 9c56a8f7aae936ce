"""ProviderAttempt entity - one adapter invocation inside a fallback chain run."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class AttemptOutcome(str, Enum):
    """Classified result of a single provider call."""

    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"
    TIMEOUT = "timeout"
    MODEL_UNAVAILABLE = "model_unavailable"


class ProviderAttempt(SQLModel, table=True):
    """Append-only attempt record. Rows are never updated once written."""

    __tablename__ = "provider_attempts"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "sequence", name="uq_provider_attempts_job_seq"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="generation_jobs.id", index=True)
    sequence: int = Field(ge=1)
    chain_run: int = Field(default=1, ge=1)
    model: str = Field(max_length=255)
    started_at: datetime = Field(sa_type=DateTime(timezone=True))
    duration_ms: int = Field(ge=0)
    outcome: AttemptOutcome
    error_detail: Optional[str] = Field(default=None, max_length=2000)
