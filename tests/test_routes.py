"""API tests for the processing and job endpoints.

Tests:
- POST /jobs - Enqueue with explicit or derived idempotency keys
- GET /jobs/{idempotency_key} - State, attempts and artifact
- POST /process - Single pass, drain, capability filter, 503 on queue outage
- GET /queue/metrics - Per-queue counters and jobs per state
- GET /health - Without a database
"""

import httpx
import pytest
import pytest_asyncio
from fakes import ScriptedAdapter, image_payload, video_payload
from httpx import ASGITransport, AsyncClient

from storyforge.app import app
from storyforge.core.config import Settings
from storyforge.models.job import Capability
from storyforge.pipeline import build_pipeline
from storyforge.pipeline.fallback import FallbackChain
from storyforge.services.exceptions import (
    LedgerUnavailable,
    QueueUnavailable,
    TransientProviderError,
)


@pytest_asyncio.fixture
async def pipeline(clock):
    """In-memory pipeline with scripted image and video models."""
    settings = Settings(_env_file=None, QUEUE_BACKEND="memory", ARTIFACT_BACKEND="memory")
    chains = {
        Capability.IMAGE: FallbackChain(
            Capability.IMAGE,
            [ScriptedAdapter("gemini-2.5-flash-image", b"png-bytes")],
            attempt_timeout=30,
            clock=clock,
        ),
        Capability.VIDEO: FallbackChain(
            Capability.VIDEO,
            [
                ScriptedAdapter(
                    "veo-3.1-fast-generate-preview",
                    TransientProviderError("429"),
                    media_type="video/mp4",
                ),
                ScriptedAdapter("veo-2.0-generate-001", b"mp4-bytes", media_type="video/mp4"),
            ],
            attempt_timeout=30,
            clock=clock,
        ),
    }
    async with httpx.AsyncClient() as http_client:
        yield build_pipeline(settings, http_client, clock=clock, chains=chains)


@pytest_asyncio.fixture
async def test_client(pipeline):
    """Provide AsyncClient with the in-memory pipeline injected into app.state."""
    app.state.settings = Settings(_env_file=None, QUEUE_BACKEND="memory", ARTIFACT_BACKEND="memory")
    app.state.session_factory = None
    app.state.pipeline = pipeline

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
class TestJobsEndpoint:
    """Test POST /jobs and GET /jobs/{idempotency_key}."""

    async def test_enqueue_with_explicit_key(self, test_client, pipeline):
        response = await test_client.post("/jobs", json=image_payload("scene1-abc"))

        assert response.status_code == 202
        assert response.json() == {"messageId": 1, "idempotencyKey": "scene1-abc"}
        metrics = await pipeline.queue(Capability.IMAGE).metrics()
        assert metrics.queue_length == 1

    async def test_enqueue_derives_key_from_entity_and_request(self, test_client):
        body = image_payload()
        del body["idempotencyKey"]

        first = await test_client.post("/jobs", json=body)
        second = await test_client.post("/jobs", json=body)

        assert first.status_code == 202
        key = first.json()["idempotencyKey"]
        assert key.startswith("scene1-")
        assert second.json()["idempotencyKey"] == key
        assert second.json()["messageId"] == first.json()["messageId"] + 1

    async def test_video_request_goes_to_video_queue(self, test_client, pipeline):
        response = await test_client.post("/jobs", json=video_payload("scene2-veo"))

        assert response.status_code == 202
        assert (await pipeline.queue(Capability.VIDEO).metrics()).queue_length == 1
        assert (await pipeline.queue(Capability.IMAGE).metrics()).queue_length == 0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"mode": "text-to-video"},
            {"mode": "image-to-image"},
            {"prompt": "   "},
            {"delaySeconds": -1},
        ],
    )
    async def test_invalid_request_rejected(self, test_client, overrides):
        response = await test_client.post("/jobs", json=image_payload(**overrides))

        assert response.status_code == 422

    async def test_unknown_job_returns_404(self, test_client):
        response = await test_client.get("/jobs/never-enqueued")

        assert response.status_code == 404

    async def test_status_after_processing(self, test_client):
        await test_client.post("/jobs", json=video_payload("scene2-veo"))
        await test_client.post("/process", params={"capability": "video"})

        response = await test_client.get("/jobs/scene2-veo")

        assert response.status_code == 200
        data = response.json()
        assert data["idempotencyKey"] == "scene2-veo"
        assert data["state"] == "succeeded"
        assert data["chainRuns"] == 1
        assert [a["model"] for a in data["attempts"]] == [
            "veo-3.1-fast-generate-preview",
            "veo-2.0-generate-001",
        ]
        assert [a["outcome"] for a in data["attempts"]] == ["transient_error", "success"]
        assert data["artifact"]["mediaType"] == "video/mp4"
        assert data["artifact"]["storageRef"] == f"memory://video/{data['jobId']}.mp4"
        assert data["result"] == data["artifact"]["storageRef"]

    async def test_ledger_outage_returns_503(self, test_client, pipeline):
        async def unavailable(key):
            raise LedgerUnavailable("connection refused")

        pipeline.ledger.get_by_key = unavailable

        response = await test_client.get("/jobs/scene1-abc")

        assert response.status_code == 503


@pytest.mark.asyncio
class TestProcessEndpoint:
    """Test POST /process and GET /queue/metrics."""

    async def test_single_pass_summary(self, test_client):
        await test_client.post("/jobs", json=image_payload("scene1-abc"))

        response = await test_client.post("/process")

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["succeeded"] == 1
        assert data["failed"] == 0
        assert data["skippedDuplicate"] == 0
        assert data["passes"] == 2  # one pass per capability

    async def test_capability_filter(self, test_client, pipeline):
        await test_client.post("/jobs", json=image_payload("scene1-abc"))
        await test_client.post("/jobs", json=video_payload("scene2-veo"))

        response = await test_client.post("/process", params={"capability": "image"})

        assert response.json()["succeeded"] == 1
        assert (await pipeline.queue(Capability.VIDEO).metrics()).queue_length == 1

    async def test_drain_processes_beyond_one_batch(self, test_client):
        for n in range(3):
            await test_client.post("/jobs", json=image_payload(f"scene{n}-abc"))

        response = await test_client.post(
            "/process", params={"mode": "drain", "max_messages": 1, "capability": "image"}
        )

        data = response.json()
        assert data["succeeded"] == 3
        assert data["passes"] == 4

    @pytest.mark.parametrize(
        "params",
        [
            {"mode": "forever"},
            {"max_messages": 0},
            {"max_wall_clock_seconds": 0},
            {"capability": "audio"},
        ],
    )
    async def test_invalid_parameters(self, test_client, params):
        response = await test_client.post("/process", params=params)

        assert response.status_code == 422

    async def test_queue_outage_returns_503(self, test_client, pipeline):
        async def unavailable(max_n, lease_seconds):
            raise QueueUnavailable("connection refused")

        pipeline.queue(Capability.IMAGE).claim_batch = unavailable

        response = await test_client.post("/process")

        assert response.status_code == 503
        assert "Queue unavailable" in response.json()["detail"]

    async def test_queue_metrics(self, test_client):
        await test_client.post("/jobs", json=image_payload("scene1-abc"))

        response = await test_client.get("/queue/metrics")

        assert response.status_code == 200
        queues = {q["queueName"]: q for q in response.json()["queues"]}
        assert set(queues) == {"image_generation_queue", "video_generation_queue"}
        assert queues["image_generation_queue"]["queueLength"] == 1
        assert queues["image_generation_queue"]["visible"] == 1
        assert queues["video_generation_queue"]["queueLength"] == 0
        assert "scrapedAt" in response.json()
        # No job exists until a pass picks the message up
        assert response.json()["jobs"] == {}

    async def test_queue_metrics_counts_jobs_per_state(self, test_client):
        await test_client.post("/jobs", json=image_payload("scene1-abc"))
        await test_client.post("/process", params={"capability": "image"})

        response = await test_client.get("/queue/metrics")

        assert response.json()["jobs"] == {"succeeded": 1}


@pytest.mark.asyncio
async def test_health_without_database(test_client):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "not configured"}
