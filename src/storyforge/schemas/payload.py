"""Queue payload schema for generation requests.

The payload is opaque to the queue; the consumer validates it when a message
is claimed. Field names are camelCase on the wire to match the storyboard client.
"""

import hashlib
import json
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from storyforge.models.job import Capability, GenerationMode
from storyforge.services.generation.prompt_validator import validate_prompt

AspectRatio = Literal["16:9", "9:16"]
Resolution = Literal["720p", "1080p"]
VIDEO_DURATIONS = (4, 6, 8)

# Inputs stored on the Job row; the remaining payload fields are columns.
_JOB_COLUMN_FIELDS = {"idempotency_key", "mode", "capability"}


class GenerationPayload(BaseModel):
    """Validated queue message payload."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    idempotency_key: str = Field(min_length=1, max_length=255)
    mode: GenerationMode
    capability: Capability
    prompt: str
    storyboard_id: str | None = None
    scene_id: str | None = None
    character_id: str | None = None
    reference_media_ref: str | None = None
    requested_model_hint: str | None = None
    aspect_ratio: AspectRatio | None = None
    duration_seconds: int | None = None
    resolution: Resolution | None = None

    @field_validator("prompt")
    @classmethod
    def check_prompt(cls, v: str) -> str:
        return validate_prompt(v)

    @field_validator("duration_seconds", mode="before")
    @classmethod
    def check_duration(cls, v):
        # The storyboard client sends durations as strings ("4", "6", "8")
        if v is None:
            return v
        duration = int(v)
        if duration not in VIDEO_DURATIONS:
            raise ValueError(f"durationSeconds must be one of {VIDEO_DURATIONS}, got {v}")
        return duration

    @model_validator(mode="after")
    def check_mode_matches_capability(self) -> "GenerationPayload":
        if self.mode.capability != self.capability:
            raise ValueError(
                f"mode {self.mode.value} produces {self.mode.capability.value}, "
                f"but capability is {self.capability.value}"
            )
        if self.mode.needs_reference and not self.reference_media_ref:
            raise ValueError(f"mode {self.mode.value} requires referenceMediaRef")
        return self

    def job_inputs(self) -> dict:
        """Inputs persisted on the Job (prompt, references, target entities, video options)."""
        return self.model_dump(exclude=_JOB_COLUMN_FIELDS, exclude_none=True)

    def to_message(self) -> dict:
        """Wire form for enqueueing."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def derive_idempotency_key(
    mode: GenerationMode,
    prompt: str,
    entity_id: str | None = None,
    reference_media_ref: str | None = None,
) -> str:
    """Build a `<entity>-<request hash>` key for callers that do not supply one.

    The same entity, mode, prompt and reference always produce the same key,
    so resubmitting an identical request maps to the existing job.
    """
    request = json.dumps(
        {"mode": mode.value, "prompt": prompt.strip(), "reference": reference_media_ref},
        sort_keys=True,
    )
    request_hash = hashlib.sha256(request.encode("utf-8")).hexdigest()[:12]
    return f"{entity_id or 'request'}-{request_hash}"
