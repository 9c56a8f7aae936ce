"""Artifact repository.

Provides data access for Artifact records (one per job).
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.models.artifact import Artifact


class ArtifactRepository:
    """Repository for Artifact entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_job(self, job_id: UUID) -> Artifact | None:
        """Retrieve the artifact stored for a job.

        Args:
            job_id: Owning job's unique identifier

        Returns:
            Artifact if one was saved, None otherwise
        """
        result = await self.session.execute(
            select(Artifact).where(Artifact.job_id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def insert_if_absent(self, artifact: Artifact) -> bool:
        """Insert artifact unless the job already has one.

        Args:
            artifact: New artifact record

        Returns:
            True if inserted, False if an artifact already existed for the job
        """
        stmt = (
            insert(Artifact)
            .values(**artifact.model_dump())
            .on_conflict_do_nothing(index_elements=["job_id"])
            .returning(Artifact.id)  # type: ignore[arg-type]
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.scalar_one_or_none() is not None
