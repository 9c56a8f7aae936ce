"""Artifact entity - stored output of a succeeded job."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from storyforge.core.clock import utcnow
from storyforge.models.job import Capability


class Artifact(SQLModel, table=True):
    """At most one artifact per job (unique job_id)."""

    __tablename__ = "artifacts"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="generation_jobs.id", unique=True, index=True)
    capability: Capability
    media_type: str = Field(max_length=100)
    storage_ref: str = Field(max_length=1024)
    public_url: Optional[str] = Field(default=None, max_length=2048)
    size_bytes: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
