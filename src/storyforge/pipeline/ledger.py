"""Job ledger: the single source of truth for job state and attempts.

The ledger is passed explicitly to the consumer. Jobs are resolved by
idempotency key with one atomic insert-or-fetch, and every state change is a
compare-and-set on the observed state.
"""

from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, Protocol
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from storyforge.core.clock import utcnow
from storyforge.models.job import Job, JobState
from storyforge.models.provider_attempt import ProviderAttempt
from storyforge.pipeline.fallback import AttemptRecord
from storyforge.schemas.payload import GenerationPayload
from storyforge.services.exceptions import LedgerUnavailable

logger = structlog.get_logger(__name__)


class JobLedger(Protocol):
    async def get_or_create(self, payload: GenerationPayload) -> tuple[Job, bool]: ...

    async def get(self, job_id: UUID) -> Job | None: ...

    async def get_by_key(self, idempotency_key: str) -> Job | None: ...

    async def compare_and_set(
        self, job_id: UUID, expected: JobState, new: JobState, **changes: Any
    ) -> Job | None: ...

    async def append_attempt(self, job_id: UUID, record: AttemptRecord) -> ProviderAttempt: ...

    async def list_attempts(self, job_id: UUID) -> list[ProviderAttempt]: ...

    async def count_by_state(self) -> dict[JobState, int]: ...


def _new_job(payload: GenerationPayload) -> Job:
    return Job(
        idempotency_key=payload.idempotency_key,
        mode=payload.mode,
        capability=payload.capability,
        inputs=payload.job_inputs(),
        state=JobState.QUEUED,
        chain_runs=0,
    )


def _attempt(job_id: UUID, sequence: int, record: AttemptRecord) -> ProviderAttempt:
    return ProviderAttempt(
        job_id=job_id,
        sequence=sequence,
        chain_run=record.chain_run,
        model=record.model,
        started_at=record.started_at,
        duration_ms=record.duration_ms,
        outcome=record.outcome,
        error_detail=record.error_detail[:2000] if record.error_detail else None,
    )


class InMemoryJobLedger:
    """Process-local ledger. Returned jobs are copies; only CAS mutates state."""

    def __init__(self):
        self._jobs: dict[UUID, Job] = {}
        self._keys: dict[str, UUID] = {}
        self._attempts: dict[UUID, list[ProviderAttempt]] = {}

    @staticmethod
    def _copy(job: Job) -> Job:
        return Job(**job.model_dump())

    async def get_or_create(self, payload: GenerationPayload) -> tuple[Job, bool]:
        job_id = self._keys.get(payload.idempotency_key)
        if job_id is not None:
            return self._copy(self._jobs[job_id]), False

        job = _new_job(payload)
        self._jobs[job.id] = job
        self._keys[job.idempotency_key] = job.id
        self._attempts[job.id] = []
        return self._copy(job), True

    async def get(self, job_id: UUID) -> Job | None:
        job = self._jobs.get(job_id)
        return self._copy(job) if job else None

    async def get_by_key(self, idempotency_key: str) -> Job | None:
        job_id = self._keys.get(idempotency_key)
        return await self.get(job_id) if job_id else None

    async def compare_and_set(
        self, job_id: UUID, expected: JobState, new: JobState, **changes: Any
    ) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None or job.state != expected:
            return None
        job.state = new
        job.updated_at = utcnow()
        for field, value in changes.items():
            setattr(job, field, value)
        return self._copy(job)

    async def append_attempt(self, job_id: UUID, record: AttemptRecord) -> ProviderAttempt:
        attempts = self._attempts.setdefault(job_id, [])
        attempt = _attempt(job_id, len(attempts) + 1, record)
        attempts.append(attempt)
        return ProviderAttempt(**attempt.model_dump())

    async def list_attempts(self, job_id: UUID) -> list[ProviderAttempt]:
        return [ProviderAttempt(**a.model_dump()) for a in self._attempts.get(job_id, [])]

    async def count_by_state(self) -> dict[JobState, int]:
        return dict(Counter(job.state for job in self._jobs.values()))


class PostgresJobLedger:
    """Ledger backed by generation_jobs and provider_attempts.

    Each operation runs in its own unit of work so attempts are durable as
    soon as they are appended, even if the pass is cut short afterwards.
    """

    def __init__(self, uow_factory):
        """Initialize Postgres ledger.

        Args:
            uow_factory: Factory returning UnitOfWork instances
        """
        self.uow_factory = uow_factory

    @asynccontextmanager
    async def _transaction(self, operation: str):
        try:
            async with await self.uow_factory() as uow:
                yield uow
        except (SQLAlchemyError, OSError) as e:
            logger.error("ledger.unavailable", operation=operation, error=str(e))
            raise LedgerUnavailable(f"Job ledger {operation} failed: {e}") from e

    async def get_or_create(self, payload: GenerationPayload) -> tuple[Job, bool]:
        async with self._transaction("get_or_create") as uow:
            created = await uow.jobs.insert_if_absent(_new_job(payload))
            job = await uow.jobs.get_by_key(payload.idempotency_key)
        if job is None:
            raise LedgerUnavailable(
                f"Job {payload.idempotency_key} vanished after insert-or-fetch"
            )
        return job, created

    async def get(self, job_id: UUID) -> Job | None:
        async with self._transaction("get") as uow:
            return await uow.jobs.get_by_id(job_id)

    async def get_by_key(self, idempotency_key: str) -> Job | None:
        async with self._transaction("get_by_key") as uow:
            return await uow.jobs.get_by_key(idempotency_key)

    async def compare_and_set(
        self, job_id: UUID, expected: JobState, new: JobState, **changes: Any
    ) -> Job | None:
        async with self._transaction("compare_and_set") as uow:
            return await uow.jobs.compare_and_set(job_id, expected, new, changes)

    async def append_attempt(self, job_id: UUID, record: AttemptRecord) -> ProviderAttempt:
        async with self._transaction("append_attempt") as uow:
            # Sequence is assigned by the repository
            return await uow.attempts.append(_attempt(job_id, 1, record))

    async def list_attempts(self, job_id: UUID) -> list[ProviderAttempt]:
        async with self._transaction("list_attempts") as uow:
            return await uow.attempts.list_for_job(job_id)

    async def count_by_state(self) -> dict[JobState, int]:
        """Jobs per lifecycle state; states with no jobs are omitted."""
        async with self._transaction("count_by_state") as uow:
            return await uow.jobs.count_by_state()
