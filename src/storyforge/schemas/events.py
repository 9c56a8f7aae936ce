"""Completion event published to ResultNotifier consumers."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storyforge.core.clock import utcnow


class CompletionEvent(BaseModel):
    """Terminal outcome of a job, as seen by realtime sync and the UI."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: UUID
    idempotency_key: str
    outcome: Literal["succeeded", "failed"]
    artifact_ref: str | None = None
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
