"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from storyforge.models.artifact import Artifact
from storyforge.models.job import Capability, GenerationMode, Job, JobState
from storyforge.models.provider_attempt import AttemptOutcome, ProviderAttempt
from storyforge.models.queue_message import QueueMessage

__all__ = [
    "Artifact",
    "AttemptOutcome",
    "Capability",
    "GenerationMode",
    "Job",
    "JobState",
    "ProviderAttempt",
    "QueueMessage",
]
