"""In-memory test doubles for pipeline tests."""

from datetime import datetime, timedelta, timezone

from storyforge.models.job import Capability
from storyforge.pipeline.artifacts import ArtifactStore, InMemoryArtifactIndex
from storyforge.pipeline.consumer import ConsumerPolicy, JobConsumer
from storyforge.pipeline.fallback import FallbackChain
from storyforge.pipeline.ledger import InMemoryJobLedger
from storyforge.pipeline.queue import InMemoryQueueStore
from storyforge.schemas.events import CompletionEvent
from storyforge.schemas.payload import GenerationPayload
from storyforge.services.generation.base import GeneratedMedia, GenerationRequest
from storyforge.services.storage.blob_store import StoredBlob

T0 = datetime(2025, 11, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ScriptedAdapter:
    """Adapter that replays a script of results.

    Each script entry is either GeneratedMedia-like bytes (success), an
    exception instance (raised), or a callable run with the request.
    The last entry repeats once the script is exhausted.
    """

    def __init__(self, model: str, *script, media_type: str = "image/png", accepts_reference=True):
        self.model = model
        self.script = list(script) or [b"media"]
        self.media_type = media_type
        self.accepts_reference = accepts_reference
        self.calls: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GeneratedMedia:
        self.calls.append(request)
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if callable(step):
            step = await step(request)
        if isinstance(step, BaseException):
            raise step
        return GeneratedMedia(data=step, media_type=self.media_type, model=self.model)


class RecordingNotifier:
    def __init__(self):
        self.events: list[CompletionEvent] = []

    async def publish(self, event: CompletionEvent) -> None:
        self.events.append(event)


class RecordingBlobStore:
    def __init__(self):
        self.blobs: dict[str, tuple[bytes, str]] = {}

    async def put(self, path, data, media_type, capability):
        self.blobs[path] = (data, media_type)
        return StoredBlob(storage_ref=path, public_url=f"https://cdn.test/{path}")


def image_payload(key: str = "scene1-abc", **overrides) -> dict:
    payload = {
        "idempotencyKey": key,
        "mode": "text-to-image",
        "capability": "image",
        "sceneId": "scene1",
        "prompt": "A hero standing on a cliff at golden hour",
    }
    payload.update(overrides)
    return payload


def video_payload(key: str = "scene2-veo", **overrides) -> dict:
    payload = {
        "idempotencyKey": key,
        "mode": "text-to-video",
        "capability": "video",
        "sceneId": "scene2",
        "prompt": "Slow dolly in on an ancient temple",
        "durationSeconds": "8",
        "aspectRatio": "16:9",
    }
    payload.update(overrides)
    return payload


def payload_model(data: dict) -> GenerationPayload:
    return GenerationPayload.model_validate(data)


class Harness:
    """One consumer wired to in-memory stores."""

    def __init__(
        self,
        adapters,
        capability: Capability = Capability.IMAGE,
        clock: FakeClock | None = None,
        attempt_timeout: float = 30.0,
        **policy_overrides,
    ):
        self.clock = clock or FakeClock()
        self.queue = InMemoryQueueStore(
            f"{capability.value}_generation_queue",
            dead_letter_threshold=policy_overrides.pop("dead_letter_threshold", 5),
            clock=self.clock,
        )
        self.ledger = InMemoryJobLedger()
        self.blobs = RecordingBlobStore()
        self.index = InMemoryArtifactIndex()
        self.artifacts = ArtifactStore(self.blobs, self.index)
        self.notifier = RecordingNotifier()
        self.chain = FallbackChain(capability, adapters, attempt_timeout, clock=self.clock)
        policy = dict(batch_size=5, lease_seconds=120, max_chain_runs=3, concurrency=4)
        policy.update(policy_overrides)
        self.policy = ConsumerPolicy(**policy)
        self.consumer = JobConsumer(
            queue=self.queue,
            ledger=self.ledger,
            chain=self.chain,
            artifacts=self.artifacts,
            notifier=self.notifier,
            policy=self.policy,
            clock=self.clock,
        )

    async def enqueue(self, payload: dict, delay: float = 0) -> int:
        return await self.queue.enqueue(payload, delay)

    def sibling(self, adapters) -> JobConsumer:
        """Second consumer sharing this harness's queue, ledger and stores."""
        chain = FallbackChain(
            self.chain.capability, adapters, self.chain.attempt_timeout, clock=self.clock
        )
        return JobConsumer(
            queue=self.queue,
            ledger=self.ledger,
            chain=chain,
            artifacts=self.artifacts,
            notifier=self.notifier,
            policy=self.policy,
            clock=self.clock,
        )
