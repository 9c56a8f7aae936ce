"""Repository layer for the generation pipeline.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from storyforge.repositories.artifact import ArtifactRepository
from storyforge.repositories.job import JobRepository
from storyforge.repositories.provider_attempt import ProviderAttemptRepository
from storyforge.repositories.queue_message import QueueMessageRepository

__all__ = [
    "ArtifactRepository",
    "JobRepository",
    "ProviderAttemptRepository",
    "QueueMessageRepository",
]
