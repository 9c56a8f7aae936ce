"""Pipeline wiring: one consumer per capability over shared ledger and storage."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Literal

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyforge.core.clock import Clock, SystemClock
from storyforge.core.config import Settings
from storyforge.core.database import setup_db_session
from storyforge.models.job import Capability, JobState
from storyforge.pipeline.artifacts import (
    ArtifactStore,
    InMemoryArtifactIndex,
    PostgresArtifactIndex,
)
from storyforge.pipeline.consumer import ConsumerPolicy, JobConsumer
from storyforge.pipeline.fallback import FallbackChain, build_fallback_chains
from storyforge.pipeline.ledger import InMemoryJobLedger, JobLedger, PostgresJobLedger
from storyforge.pipeline.notifier import (
    CompositeNotifier,
    LoggingNotifier,
    ResultNotifier,
    WebhookNotifier,
)
from storyforge.pipeline.queue import (
    InMemoryQueueStore,
    PgmqQueueStore,
    PostgresQueueStore,
    QueueMetrics,
    QueueStore,
)
from storyforge.schemas.payload import GenerationPayload
from storyforge.schemas.summary import PassSummary
from storyforge.services.storage.blob_store import BlobStore, InMemoryBlobStore, LocalBlobStore
from storyforge.services.storage.supabase_storage import SupabaseBlobStore
from storyforge.uow import create_uow_factory

logger = structlog.get_logger(__name__)

RunMode = Literal["single", "drain"]


@dataclass
class Pipeline:
    """Entry point shared by the HTTP endpoint, the CLI and the background poller."""

    consumers: dict[Capability, JobConsumer]
    ledger: JobLedger
    artifacts: ArtifactStore

    def queue(self, capability: Capability) -> QueueStore:
        return self.consumers[capability].queue

    async def enqueue(self, payload: GenerationPayload, delay: float = 0) -> int:
        """Put a request on its capability's queue.

        Returns:
            Queue message id
        """
        message_id = await self.queue(payload.capability).enqueue(payload.to_message(), delay)
        logger.info(
            "job.enqueued",
            message_id=message_id,
            idempotency_key=payload.idempotency_key,
            capability=payload.capability.value,
            mode=payload.mode.value,
        )
        return message_id

    async def run(
        self,
        mode: RunMode = "single",
        capability: Capability | None = None,
        max_messages: int | None = None,
        max_wall_clock: float | None = None,
    ) -> PassSummary:
        """Run one pass (or drain) on the selected capabilities concurrently.

        Raises:
            QueueUnavailable: A queue backend could not be reached
        """
        consumers = [self.consumers[capability]] if capability else list(self.consumers.values())

        async def run_consumer(consumer: JobConsumer) -> PassSummary:
            if mode == "drain":
                return await consumer.run_until_empty(
                    max_wall_clock=max_wall_clock, batch_size=max_messages
                )
            return await consumer.run_pass(
                max_messages=max_messages, max_wall_clock=max_wall_clock
            )

        results = await asyncio.gather(
            *(run_consumer(c) for c in consumers), return_exceptions=True
        )

        total = PassSummary()
        for result in results:
            if isinstance(result, BaseException):
                raise result
            total.merge(result)
        return total

    async def metrics(self) -> list[QueueMetrics]:
        return [await consumer.queue.metrics() for consumer in self.consumers.values()]

    async def job_counts(self) -> dict[JobState, int]:
        return await self.ledger.count_by_state()


def _blob_store(settings: Settings, http_client: httpx.AsyncClient) -> BlobStore:
    if settings.artifact_backend == "supabase":
        return SupabaseBlobStore(
            client=http_client,
            supabase_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            buckets={
                Capability.IMAGE: settings.image_bucket,
                Capability.VIDEO: settings.video_bucket,
            },
            timeout=settings.storage_timeout_seconds,
        )
    if settings.artifact_backend == "memory":
        return InMemoryBlobStore()
    return LocalBlobStore(settings.artifact_root)


def _notifier(settings: Settings, http_client: httpx.AsyncClient) -> ResultNotifier:
    notifiers: list[ResultNotifier] = [LoggingNotifier()]
    if settings.notify_webhook_url:
        notifiers.append(
            WebhookNotifier(
                http_client, settings.notify_webhook_url, timeout=settings.notify_timeout_seconds
            )
        )
    return CompositeNotifier(notifiers)


def _policy(settings: Settings, capability: Capability) -> ConsumerPolicy:
    if capability is Capability.IMAGE:
        batch_size, lease = settings.image_batch_size, settings.image_lease_seconds
        budget = settings.image_pass_max_wall_clock_seconds
    else:
        batch_size, lease = settings.video_batch_size, settings.video_lease_seconds
        budget = settings.video_pass_max_wall_clock_seconds
    return ConsumerPolicy(
        batch_size=batch_size,
        lease_seconds=lease,
        max_chain_runs=settings.max_chain_runs,
        backoff_base_seconds=settings.retry_backoff_base_seconds,
        backoff_max_seconds=settings.retry_backoff_max_seconds,
        max_wall_clock_seconds=budget,
        finalize_grace_seconds=settings.pass_finalize_grace_seconds,
        storage_timeout_seconds=settings.storage_timeout_seconds,
        concurrency=settings.worker_concurrency,
    )


def build_pipeline(
    settings: Settings,
    http_client: httpx.AsyncClient,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock | None = None,
    chains: dict[Capability, FallbackChain] | None = None,
) -> Pipeline:
    """Assemble the pipeline from settings.

    The "memory" queue backend keeps the ledger and artifact index in process
    too; the postgres and pgmq backends share the database ledger.

    Args:
        settings: Application settings
        http_client: Shared HTTP client for providers, storage and webhooks
        session_factory: Database session factory (required unless queue_backend is "memory")
        clock: Time source (default: system clock)
        chains: Prebuilt fallback chains (default: built from the configured model lists)

    Raises:
        ValueError: Database backend selected without a session factory, or invalid chains
    """
    clock = clock or SystemClock()
    chains = chains or build_fallback_chains(settings, http_client, clock)

    queues: dict[Capability, QueueStore]
    queue_names = {
        Capability.IMAGE: settings.image_queue_name,
        Capability.VIDEO: settings.video_queue_name,
    }
    if settings.queue_backend == "memory":
        queues = {
            capability: InMemoryQueueStore(name, settings.dead_letter_threshold, clock)
            for capability, name in queue_names.items()
        }
        ledger: JobLedger = InMemoryJobLedger()
        index = InMemoryArtifactIndex()
    else:
        if session_factory is None:
            raise ValueError(f"QUEUE_BACKEND={settings.queue_backend} requires a database")
        uow_factory = create_uow_factory(session_factory)
        if settings.queue_backend == "pgmq":
            queues = {
                capability: PgmqQueueStore(uow_factory, name, settings.dead_letter_threshold)
                for capability, name in queue_names.items()
            }
        else:
            queues = {
                capability: PostgresQueueStore(
                    uow_factory, name, settings.dead_letter_threshold, clock
                )
                for capability, name in queue_names.items()
            }
        ledger = PostgresJobLedger(uow_factory)
        index = PostgresArtifactIndex(uow_factory)

    artifacts = ArtifactStore(_blob_store(settings, http_client), index)
    notifier = _notifier(settings, http_client)

    consumers = {
        capability: JobConsumer(
            queue=queues[capability],
            ledger=ledger,
            chain=chain,
            artifacts=artifacts,
            notifier=notifier,
            policy=_policy(settings, capability),
            clock=clock,
        )
        for capability, chain in chains.items()
    }

    logger.info(
        "pipeline.built",
        queue_backend=settings.queue_backend,
        artifact_backend=settings.artifact_backend,
        chains={c.value: chain.models for c, chain in chains.items()},
    )
    return Pipeline(consumers=consumers, ledger=ledger, artifacts=artifacts)


@asynccontextmanager
async def open_pipeline(settings: Settings) -> AsyncIterator[Pipeline]:
    """Build a pipeline with its own database pool and HTTP client (CLI use).

    Example:
        async with open_pipeline(settings) as pipeline:
            summary = await pipeline.run(mode="drain")
    """
    session_factory = None
    if settings.queue_backend != "memory":
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0)) as http_client:
            yield build_pipeline(settings, http_client, session_factory)
    finally:
        if session_factory is not None:
            await session_factory.kw["bind"].dispose()
