"""Artifact persistence, idempotent per job.

Blobs live at `<capability>/<job_id>.<ext>` in the configured blob backend;
the artifact record (one per job) lives in the artifact index.
"""

import mimetypes
from typing import Protocol
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from storyforge.models.artifact import Artifact
from storyforge.models.job import Capability
from storyforge.services.exceptions import InvariantViolation, LedgerUnavailable
from storyforge.services.storage.blob_store import BlobStore

logger = structlog.get_logger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
}


def artifact_path(capability: Capability, job_id: UUID, media_type: str) -> str:
    """Storage path for a job's artifact, namespaced by capability."""
    extension = _EXTENSIONS.get(media_type) or mimetypes.guess_extension(media_type) or ".bin"
    return f"{capability.value}/{job_id}{extension}"


class ArtifactIndex(Protocol):
    async def get_by_job(self, job_id: UUID) -> Artifact | None: ...

    async def insert_if_absent(self, artifact: Artifact) -> bool: ...


class InMemoryArtifactIndex:
    def __init__(self):
        self.artifacts: dict[UUID, Artifact] = {}

    async def get_by_job(self, job_id: UUID) -> Artifact | None:
        return self.artifacts.get(job_id)

    async def insert_if_absent(self, artifact: Artifact) -> bool:
        if artifact.job_id in self.artifacts:
            return False
        self.artifacts[artifact.job_id] = artifact
        return True


class PostgresArtifactIndex:
    """Artifact records in the artifacts table (unique job_id)."""

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory

    async def get_by_job(self, job_id: UUID) -> Artifact | None:
        try:
            async with await self.uow_factory() as uow:
                return await uow.artifacts.get_by_job(job_id)
        except (SQLAlchemyError, OSError) as e:
            raise LedgerUnavailable(f"Artifact lookup failed: {e}") from e

    async def insert_if_absent(self, artifact: Artifact) -> bool:
        try:
            async with await self.uow_factory() as uow:
                return await uow.artifacts.insert_if_absent(artifact)
        except (SQLAlchemyError, OSError) as e:
            raise LedgerUnavailable(f"Artifact insert failed: {e}") from e


class ArtifactStore:
    """Persists successful outputs and returns a stable artifact record."""

    def __init__(self, blob_store: BlobStore, index: ArtifactIndex):
        """Initialize artifact store.

        Args:
            blob_store: Backend that holds the media bytes
            index: Artifact records, one per job
        """
        self.blob_store = blob_store
        self.index = index

    async def get(self, job_id: UUID) -> Artifact | None:
        return await self.index.get_by_job(job_id)

    async def save(
        self, job_id: UUID, data: bytes, media_type: str, capability: Capability
    ) -> Artifact:
        """Store media for a job.

        A second save for the same job returns the existing artifact unchanged.
        A second save with a different media type is refused; the stored
        artifact is never overwritten.

        Raises:
            StorageError: Blob backend write failed
            LedgerUnavailable: Artifact index could not be read or written
            InvariantViolation: The job already has an artifact of another media type
        """
        existing = await self.index.get_by_job(job_id)
        if existing is not None:
            return self._existing(existing, media_type)

        path = artifact_path(capability, job_id, media_type)
        blob = await self.blob_store.put(path, data, media_type, capability)
        artifact = Artifact(
            job_id=job_id,
            capability=capability,
            media_type=media_type,
            storage_ref=blob.storage_ref,
            public_url=blob.public_url,
            size_bytes=len(data),
        )

        if not await self.index.insert_if_absent(artifact):
            # A concurrent finisher recorded the artifact first
            existing = await self.index.get_by_job(job_id)
            if existing is None:
                raise LedgerUnavailable(f"Artifact for job {job_id} vanished after conflict")
            return self._existing(existing, media_type)

        logger.info(
            "artifact.saved",
            job_id=str(job_id),
            storage_ref=artifact.storage_ref,
            media_type=media_type,
            size_bytes=artifact.size_bytes,
        )
        return artifact

    def _existing(self, artifact: Artifact, media_type: str) -> Artifact:
        if artifact.media_type != media_type:
            logger.error(
                "artifact.invariant_violation",
                job_id=str(artifact.job_id),
                stored_media_type=artifact.media_type,
                new_media_type=media_type,
            )
            raise InvariantViolation(
                f"Job {artifact.job_id} already has a {artifact.media_type} artifact, "
                f"refusing {media_type}"
            )
        return artifact
