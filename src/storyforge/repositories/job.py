"""Job repository for the generation ledger.

Provides data access for Job entities. All state changes go through
compare_and_set so that concurrent consumers cannot both finalize a job.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.core.clock import utcnow
from storyforge.models.job import Job, JobState


class JobRepository:
    """Repository for Job entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, job_id: UUID) -> Job | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(select(Job).where(Job.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_key(self, idempotency_key: str) -> Job | None:
        """Retrieve job by caller-supplied idempotency key.

        Args:
            idempotency_key: Unique key chosen by the enqueuing client

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job).where(Job.idempotency_key == idempotency_key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def insert_if_absent(self, job: Job) -> bool:
        """Insert job unless one already exists for its idempotency key.

        Uses INSERT ... ON CONFLICT (idempotency_key) DO NOTHING so that two
        consumers racing on the same key end up with exactly one row.

        Args:
            job: New job entity (not yet persisted)

        Returns:
            True if this call inserted the row, False if the key already existed
        """
        stmt = (
            insert(Job)
            .values(**job.model_dump())
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(Job.id)  # type: ignore[arg-type]
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.scalar_one_or_none() is not None

    async def compare_and_set(
        self,
        job_id: UUID,
        expected: JobState,
        new: JobState,
        changes: dict[str, Any] | None = None,
    ) -> Job | None:
        """Atomically move a job from `expected` to `new` state.

        Query explanation:
        - WHERE id = :job_id AND state = :expected: Only the holder of the
          expected state wins
        - RETURNING: Updated row, or nothing if another writer got there first

        Args:
            job_id: Job's unique identifier
            expected: State the caller observed
            new: State to move to
            changes: Extra column values to write in the same statement

        Returns:
            Updated job, or None if the job was not in the expected state
        """
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.state == expected)  # type: ignore[arg-type]
            .values(state=new, updated_at=utcnow(), **(changes or {}))
            .returning(Job)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_by_state(self) -> dict[JobState, int]:
        """Count jobs per lifecycle state.

        Returns:
            Mapping of state to number of jobs (states with no jobs are omitted)
        """
        result = await self.session.execute(
            select(Job.state, func.count()).group_by(Job.state)  # type: ignore[arg-type]
        )
        return {state: count for state, count in result.all()}
