"""ProviderAttempt repository.

Attempts are append-only: there is no update or delete method.
"""

from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.models.provider_attempt import ProviderAttempt

logger = structlog.get_logger(__name__)

SEQUENCE_CONSTRAINT = "uq_provider_attempts_job_seq"


class ProviderAttemptRepository:
    """Repository for ProviderAttempt entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def append(self, attempt: ProviderAttempt) -> ProviderAttempt:
        """Append attempt as the next entry in the job's attempt sequence.

        The sequence number is computed inside the INSERT as max(sequence) + 1
        over the rows already committed for the job. Two writers appending for
        the same job at once (a stale finisher and the consumer that took over
        its lease) can compute the same number; the loser hits the unique
        (job_id, sequence) constraint and retries once in a fresh savepoint,
        where the winner's row is visible. The sequence set on the passed
        entity is ignored.

        Args:
            attempt: Attempt entity to persist

        Returns:
            Persisted attempt with its assigned sequence

        Raises:
            IntegrityError: The retry collided again, or another constraint failed
        """
        next_sequence = (
            select(func.coalesce(func.max(ProviderAttempt.sequence), 0) + 1)
            .where(ProviderAttempt.job_id == attempt.job_id)  # type: ignore[arg-type]
            .scalar_subquery()
        )
        values = attempt.model_dump(exclude={"sequence"})
        values["id"] = values.get("id") or uuid4()
        stmt = (
            insert(ProviderAttempt)
            .values(sequence=next_sequence, **values)
            .returning(ProviderAttempt)
        )

        try:
            return await self._insert(stmt)
        except IntegrityError as e:
            if SEQUENCE_CONSTRAINT not in str(e.orig):
                raise
            logger.warning(
                "attempt.sequence_conflict", job_id=str(attempt.job_id), model=attempt.model
            )
        return await self._insert(stmt)

    async def _insert(self, stmt) -> ProviderAttempt:
        async with self.session.begin_nested():
            result = await self.session.execute(stmt)
            return result.scalar_one()

    async def list_for_job(self, job_id: UUID) -> list[ProviderAttempt]:
        """Retrieve all attempts for a job in chain order.

        Args:
            job_id: Job's unique identifier

        Returns:
            Attempts ordered by sequence (first attempt first)
        """
        result = await self.session.execute(
            select(ProviderAttempt)
            .where(ProviderAttempt.job_id == job_id)  # type: ignore[arg-type]
            .order_by(ProviderAttempt.sequence.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
