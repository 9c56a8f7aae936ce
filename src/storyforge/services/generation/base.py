"""Provider adapter contract shared by all generation models.

Providers are a closed set: every supported model is a ProviderModel member
tagged with its capability and family, and every family implements the same
single-method adapter contract (submit request, receive media or a typed error).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from storyforge.models.job import Capability, GenerationMode, Job


class ProviderFamily(str, Enum):
    GEMINI = "gemini"
    VEO = "veo"
    REPLICATE = "replicate"


class ProviderModel(str, Enum):
    """Supported generation models (capability x model)."""

    GEMINI_2_5_FLASH_IMAGE = "gemini-2.5-flash-image"
    GEMINI_2_5_FLASH_IMAGE_PREVIEW = "gemini-2.5-flash-image-preview"
    VEO_3_1 = "veo-3.1-generate-preview"
    VEO_3_1_FAST = "veo-3.1-fast-generate-preview"
    VEO_3_0 = "veo-3.0-generate-001"
    VEO_3_0_FAST = "veo-3.0-fast-generate-001"
    VEO_2_0 = "veo-2.0-generate-001"
    FLUX_SCHNELL = "black-forest-labs/flux-schnell"
    FLUX_KONTEXT_PRO = "black-forest-labs/flux-kontext-pro"

    @property
    def family(self) -> ProviderFamily:
        if self.value.startswith("gemini"):
            return ProviderFamily.GEMINI
        if self.value.startswith("veo"):
            return ProviderFamily.VEO
        return ProviderFamily.REPLICATE

    @property
    def capability(self) -> Capability:
        if self.family is ProviderFamily.VEO:
            return Capability.VIDEO
        return Capability.IMAGE


@dataclass(frozen=True)
class GenerationRequest:
    """Provider-facing view of a job's inputs."""

    mode: GenerationMode
    prompt: str
    reference_media_ref: str | None = None
    aspect_ratio: str | None = None
    duration_seconds: int | None = None
    resolution: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "GenerationRequest":
        inputs = job.inputs or {}
        return cls(
            mode=job.mode,
            prompt=inputs["prompt"],
            reference_media_ref=inputs.get("reference_media_ref"),
            aspect_ratio=inputs.get("aspect_ratio"),
            duration_seconds=inputs.get("duration_seconds"),
            resolution=inputs.get("resolution"),
        )


@dataclass(frozen=True)
class GeneratedMedia:
    """Media returned by a successful provider call."""

    data: bytes
    media_type: str
    model: str


class ProviderAdapter(Protocol):
    """Single adapter contract: submit a request, get media or a ProviderError.

    Implementations raise TransientProviderError (including ProviderTimeout)
    or PermanentProviderError; any other exception is treated as transient
    by the fallback chain.
    """

    model: str
    accepts_reference: bool

    async def generate(self, request: GenerationRequest) -> GeneratedMedia: ...
