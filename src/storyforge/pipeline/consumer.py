"""Job consumer: one processing pass over a capability's queue.

Workflow per claimed message:
1. Validate the payload (malformed → dead-letter, job never created)
2. Resolve or create the Job by idempotency key
3. Terminal job → ack and skip (duplicate delivery)
4. Transition to processing and run the fallback chain, resuming after the
   models that already failed in this run on an earlier delivery
5. Success → save artifact, CAS to succeeded, notify, ack
6. Permanent failure or chain-run budget spent → CAS to failed, notify, ack
7. Exhausted with budget left → record the run, release with backoff

Per-job errors never escape a pass; only QueueUnavailable does. Every write
is a checkpoint (attempts are appended as they finish, state changes are
compare-and-set), so a pass cut short by the host leaves no half-updated job.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from pydantic import ValidationError

from storyforge.core.clock import Clock, SystemClock
from storyforge.models.job import Capability, Job
from storyforge.models.provider_attempt import AttemptOutcome
from storyforge.models.queue_message import QueueMessage
from storyforge.pipeline.artifacts import ArtifactStore
from storyforge.pipeline.fallback import ChainStatus, FallbackChain
from storyforge.pipeline.ledger import JobLedger
from storyforge.pipeline.notifier import ResultNotifier
from storyforge.pipeline.queue import QueueStore
from storyforge.pipeline.state_machine import JobEvent, JobStateMachine, SideEffect
from storyforge.schemas.events import CompletionEvent
from storyforge.schemas.payload import GenerationPayload
from storyforge.schemas.summary import MessageOutcome, PassSummary
from storyforge.services.exceptions import InvariantViolation, QueueUnavailable
from storyforge.services.generation.base import GeneratedMedia, GenerationRequest

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConsumerPolicy:
    """Per-capability limits for claiming and retrying."""

    batch_size: int
    lease_seconds: float
    max_chain_runs: int = 3
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 600.0
    max_wall_clock_seconds: float = 50.0
    finalize_grace_seconds: float = 5.0
    storage_timeout_seconds: float = 60.0
    concurrency: int = 4

    def backoff(self, chain_runs: int) -> float:
        """Exponential retry delay after the given number of exhausted chain runs."""
        delay = self.backoff_base_seconds * 2 ** max(chain_runs - 1, 0)
        return min(delay, self.backoff_max_seconds)


class JobConsumer:
    """Drives claimed messages through the job lifecycle for one capability."""

    def __init__(
        self,
        queue: QueueStore,
        ledger: JobLedger,
        chain: FallbackChain,
        artifacts: ArtifactStore,
        notifier: ResultNotifier,
        policy: ConsumerPolicy,
        clock: Clock | None = None,
    ):
        """Initialize consumer.

        Args:
            queue: Queue holding this capability's messages
            ledger: Job ledger shared by all consumers
            chain: Fallback chain for this capability
            artifacts: Artifact store for successful outputs
            notifier: Completion event publisher
            policy: Batch, lease and retry limits
            clock: Time source for pass budgets and lease deadlines
        """
        self.queue = queue
        self.ledger = ledger
        self.chain = chain
        self.artifacts = artifacts
        self.notifier = notifier
        self.policy = policy
        self.clock = clock or SystemClock()
        self.state_machine = JobStateMachine(ledger)

    @property
    def capability(self) -> Capability:
        return self.chain.capability

    async def run_pass(
        self, max_messages: int | None = None, max_wall_clock: float | None = None
    ) -> PassSummary:
        """Claim one batch and process it within the wall-clock budget.

        Messages whose processing cannot start before the budget runs out are
        released immediately so the next pass picks them up.

        Args:
            max_messages: Maximum messages to claim (default: policy batch size)
            max_wall_clock: Budget in seconds (default: policy wall clock)

        Returns:
            Summary of message outcomes

        Raises:
            QueueUnavailable: Queue could not be reached; unclaimed messages stay queued
        """
        max_messages = max_messages or self.policy.batch_size
        if max_wall_clock is None:
            max_wall_clock = self.policy.max_wall_clock_seconds
        pass_deadline = self.clock.now() + timedelta(seconds=max_wall_clock)
        summary = PassSummary(passes=1)

        messages = await self.queue.claim_batch(max_messages, self.policy.lease_seconds)
        if not messages:
            return summary

        logger.info(
            "pass.claimed",
            queue=self.queue.queue_name,
            count=len(messages),
            max_messages=max_messages,
        )

        semaphore = asyncio.Semaphore(self.policy.concurrency)

        async def guarded(message: QueueMessage) -> MessageOutcome:
            async with semaphore:
                if self.clock.now() >= pass_deadline:
                    await self.queue.release(message.id, 0)
                    logger.info("job.deferred", message_id=message.id, reason="pass budget spent")
                    return MessageOutcome.DEFERRED
                return await self.process_message(message, pass_deadline)

        results = await asyncio.gather(*(guarded(m) for m in messages), return_exceptions=True)

        queue_error = None
        for message, result in zip(messages, results):
            if isinstance(result, QueueUnavailable):
                queue_error = queue_error or result
            elif isinstance(result, BaseException):
                logger.error(
                    "job.processing.errored",
                    message_id=message.id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                summary.record(MessageOutcome.ERRORED)
            else:
                summary.record(result)

        if queue_error is not None:
            raise queue_error

        logger.info("pass.completed", queue=self.queue.queue_name, **summary.model_dump())
        return summary

    async def run_until_empty(
        self, max_wall_clock: float | None = None, batch_size: int | None = None
    ) -> PassSummary:
        """Repeat passes until the queue yields nothing or the budget is spent."""
        if max_wall_clock is None:
            max_wall_clock = self.policy.max_wall_clock_seconds
        deadline = self.clock.now() + timedelta(seconds=max_wall_clock)
        total = PassSummary()

        while True:
            remaining = (deadline - self.clock.now()).total_seconds()
            if remaining <= 0:
                break
            summary = await self.run_pass(max_messages=batch_size, max_wall_clock=remaining)
            total.merge(summary)
            if summary.processed == 0 or summary.deferred:
                break

        return total

    async def process_message(
        self, message: QueueMessage, pass_deadline: datetime
    ) -> MessageOutcome:
        """Process one claimed message. Never raises except QueueUnavailable."""
        try:
            payload = GenerationPayload.model_validate(message.payload)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "payload"
            reason = f"malformed payload: {location}: {first['msg']}"
            logger.error("job.payload.malformed", message_id=message.id, error=str(e))
            await self.queue.dead_letter(message.id, reason)
            return MessageOutcome.FAILED

        if payload.capability != self.capability:
            logger.error(
                "job.payload.wrong_queue",
                message_id=message.id,
                capability=payload.capability.value,
                queue=self.queue.queue_name,
            )
            await self.queue.dead_letter(
                message.id, f"{payload.capability.value} job on {self.queue.queue_name}"
            )
            return MessageOutcome.FAILED

        try:
            return await self._process_job(message, payload, pass_deadline)
        except QueueUnavailable:
            raise
        except InvariantViolation as e:
            # Left to lease expiry so the violation is visible on redelivery too
            logger.error(
                "job.invariant_violation",
                message_id=message.id,
                idempotency_key=payload.idempotency_key,
                error=str(e),
            )
            return MessageOutcome.INVARIANT_VIOLATION
        except Exception as e:
            delay = self.policy.backoff(message.read_count)
            logger.error(
                "job.processing.errored",
                message_id=message.id,
                idempotency_key=payload.idempotency_key,
                error=str(e),
                error_type=type(e).__name__,
                retry_in_seconds=delay,
            )
            if not message.poisoned:
                await self.queue.release(message.id, delay)
            return MessageOutcome.ERRORED

    async def _process_job(
        self, message: QueueMessage, payload: GenerationPayload, pass_deadline: datetime
    ) -> MessageOutcome:
        job, created = await self.ledger.get_or_create(payload)
        if created:
            logger.debug("job.created", job_id=str(job.id), idempotency_key=job.idempotency_key)

        if message.poisoned:
            return await self._fail_poisoned(message, job)

        claimed, effect = await self.state_machine.apply(job, JobEvent.CLAIMED)
        if effect is SideEffect.ACK_DUPLICATE:
            await self.queue.ack(message.id)
            logger.info(
                "job.duplicate_skipped",
                job_id=str(job.id),
                idempotency_key=job.idempotency_key,
                state=job.state.value,
            )
            return MessageOutcome.SKIPPED_DUPLICATE
        if claimed is None:
            return await self._discard_stale(message, job)

        job = claimed
        deadline = min(pass_deadline, message.visible_at)
        chain_run = job.chain_runs + 1
        # Failures already recorded in this run by an earlier delivery
        earlier = [
            attempt
            for attempt in await self.ledger.list_attempts(job.id)
            if attempt.chain_run == chain_run and attempt.outcome is not AttemptOutcome.SUCCESS
        ]
        logger.info(
            "job.generation.started",
            job_id=str(job.id),
            idempotency_key=job.idempotency_key,
            chain_run=chain_run,
            models=self.chain.models,
            resumed_after=len(earlier),
        )

        job_id = job.id
        result = await self.chain.attempt(
            GenerationRequest.from_job(job),
            deadline,
            on_attempt=lambda record: self.ledger.append_attempt(job_id, record),
            hint=job.inputs.get("requested_model_hint"),
            chain_run=chain_run,
            tried={attempt.model for attempt in earlier},
        )
        if result.error is None and earlier:
            result.error = earlier[-1].error_detail

        if result.status is ChainStatus.SUCCEEDED:
            return await self._finalize_success(message, job, result.media, pass_deadline)

        if result.status is ChainStatus.DEADLINE:
            # Attempts are checkpointed; the message comes back when its lease expires
            logger.warning(
                "job.deadline_reached",
                job_id=str(job.id),
                idempotency_key=job.idempotency_key,
                attempts=len(result.attempts),
                lease_expires_at=message.visible_at.isoformat(),
            )
            return MessageOutcome.DEFERRED

        chain_runs = chain_run
        if result.status is ChainStatus.PERMANENT_FAILURE:
            return await self._finalize_failure(
                message, job, result.error or "provider rejected the request", chain_runs
            )

        if chain_runs >= self.policy.max_chain_runs:
            return await self._finalize_failure(
                message,
                job,
                f"fallback chain exhausted after {chain_runs} runs: {result.error}",
                chain_runs,
            )

        updated, _ = await self.state_machine.apply(
            job, JobEvent.RETRY_SCHEDULED, chain_runs=chain_runs, last_error=result.error
        )
        if updated is None:
            return await self._discard_stale(message, job)

        delay = self.policy.backoff(chain_runs)
        await self.queue.release(message.id, delay)
        logger.warning(
            "job.retry_scheduled",
            job_id=str(job.id),
            idempotency_key=job.idempotency_key,
            chain_runs=chain_runs,
            retry_in_seconds=delay,
            error=result.error,
        )
        return MessageOutcome.RETRIED

    async def _finalize_success(
        self,
        message: QueueMessage,
        job: Job,
        media: GeneratedMedia,
        pass_deadline: datetime,
    ) -> MessageOutcome:
        current = await self.ledger.get(job.id)
        if current is None or current.state != job.state:
            return await self._discard_stale(message, job)

        hard_cutoff = pass_deadline + timedelta(seconds=self.policy.finalize_grace_seconds)
        timeout = min(
            self.policy.storage_timeout_seconds,
            max((hard_cutoff - self.clock.now()).total_seconds(), 0.001),
        )
        artifact = await asyncio.wait_for(
            self.artifacts.save(job.id, media.data, media.media_type, job.capability),
            timeout=timeout,
        )

        updated, _ = await self.state_machine.apply(
            job,
            JobEvent.CHAIN_SUCCEEDED,
            result=artifact.storage_ref,
            chain_runs=job.chain_runs + 1,
            last_error=None,
        )
        if updated is None:
            return await self._discard_stale(message, job)

        await self._publish(
            CompletionEvent(
                job_id=job.id,
                idempotency_key=job.idempotency_key,
                outcome="succeeded",
                artifact_ref=artifact.storage_ref,
            )
        )
        await self.queue.ack(message.id)
        logger.info(
            "job.generation.succeeded",
            job_id=str(job.id),
            idempotency_key=job.idempotency_key,
            model=media.model,
            artifact_ref=artifact.storage_ref,
        )
        return MessageOutcome.SUCCEEDED

    async def _finalize_failure(
        self, message: QueueMessage, job: Job, reason: str, chain_runs: int
    ) -> MessageOutcome:
        updated, _ = await self.state_machine.apply(
            job, JobEvent.FAILED, chain_runs=chain_runs, last_error=reason[:2000]
        )
        if updated is None:
            return await self._discard_stale(message, job)

        await self._publish(
            CompletionEvent(
                job_id=job.id,
                idempotency_key=job.idempotency_key,
                outcome="failed",
                reason=reason,
            )
        )
        await self.queue.ack(message.id)
        logger.error(
            "job.generation.failed",
            job_id=str(job.id),
            idempotency_key=job.idempotency_key,
            chain_runs=chain_runs,
            reason=reason,
        )
        return MessageOutcome.FAILED

    async def _fail_poisoned(self, message: QueueMessage, job: Job) -> MessageOutcome:
        if job.state.is_terminal:
            return MessageOutcome.SKIPPED_DUPLICATE

        reason = f"dead-lettered after {message.read_count} deliveries"
        updated, _ = await self.state_machine.apply(job, JobEvent.FAILED, last_error=reason)
        if updated is None:
            logger.warning("job.poisoned.stale", job_id=str(job.id), message_id=message.id)
            return MessageOutcome.SKIPPED_DUPLICATE

        await self._publish(
            CompletionEvent(
                job_id=job.id,
                idempotency_key=job.idempotency_key,
                outcome="failed",
                reason=reason,
            )
        )
        logger.error(
            "job.generation.failed",
            job_id=str(job.id),
            idempotency_key=job.idempotency_key,
            message_id=message.id,
            reason=reason,
        )
        return MessageOutcome.FAILED

    async def _discard_stale(self, message: QueueMessage, job: Job) -> MessageOutcome:
        """Another consumer changed the job first; drop this result."""
        current = await self.ledger.get(job.id)
        if current is not None and current.state.is_terminal:
            await self.queue.ack(message.id)
            logger.warning(
                "job.result_discarded",
                job_id=str(job.id),
                idempotency_key=job.idempotency_key,
                current_state=current.state.value,
            )
            return MessageOutcome.SKIPPED_DUPLICATE

        # Still in flight elsewhere; its holder will finish or the lease will expire
        logger.warning(
            "job.concurrent_update",
            job_id=str(job.id),
            idempotency_key=job.idempotency_key,
            current_state=current.state.value if current else None,
        )
        return MessageOutcome.DEFERRED

    async def _publish(self, event: CompletionEvent) -> None:
        try:
            await self.notifier.publish(event)
        except Exception as e:
            logger.warning("notify.failed", job_id=str(event.job_id), error=str(e))
