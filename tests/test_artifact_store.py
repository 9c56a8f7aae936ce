"""Artifact store and blob backend tests."""

from uuid import uuid4

import httpx
import pytest
from fakes import RecordingBlobStore

from storyforge.models.job import Capability
from storyforge.pipeline.artifacts import ArtifactStore, InMemoryArtifactIndex, artifact_path
from storyforge.services.exceptions import InvariantViolation, StorageError
from storyforge.services.storage.blob_store import InMemoryBlobStore, LocalBlobStore
from storyforge.services.storage.supabase_storage import SupabaseBlobStore


@pytest.fixture
def blobs() -> RecordingBlobStore:
    return RecordingBlobStore()


@pytest.fixture
def store(blobs) -> ArtifactStore:
    return ArtifactStore(blobs, InMemoryArtifactIndex())


def test_artifact_path_is_namespaced_by_capability():
    job_id = uuid4()

    assert artifact_path(Capability.IMAGE, job_id, "image/png") == f"image/{job_id}.png"
    assert artifact_path(Capability.IMAGE, job_id, "image/jpeg") == f"image/{job_id}.jpg"
    assert artifact_path(Capability.VIDEO, job_id, "video/mp4") == f"video/{job_id}.mp4"
    assert artifact_path(Capability.IMAGE, job_id, "application/x-unknown") == (
        f"image/{job_id}.bin"
    )


@pytest.mark.asyncio
async def test_save_writes_blob_and_records_artifact(store, blobs):
    job_id = uuid4()

    artifact = await store.save(job_id, b"png-bytes", "image/png", Capability.IMAGE)

    assert artifact.job_id == job_id
    assert artifact.capability == Capability.IMAGE
    assert artifact.media_type == "image/png"
    assert artifact.size_bytes == len(b"png-bytes")
    assert artifact.storage_ref == f"image/{job_id}.png"
    assert artifact.public_url == f"https://cdn.test/image/{job_id}.png"
    assert blobs.blobs[artifact.storage_ref] == (b"png-bytes", "image/png")
    assert await store.get(job_id) == artifact


@pytest.mark.asyncio
async def test_second_save_returns_existing_artifact(store, blobs):
    job_id = uuid4()
    first = await store.save(job_id, b"first", "image/png", Capability.IMAGE)

    second = await store.save(job_id, b"second", "image/png", Capability.IMAGE)

    assert second.storage_ref == first.storage_ref
    assert second.size_bytes == len(b"first")
    assert blobs.blobs[first.storage_ref] == (b"first", "image/png")


@pytest.mark.asyncio
async def test_save_with_different_media_type_is_refused(store, blobs):
    job_id = uuid4()
    first = await store.save(job_id, b"png", "image/png", Capability.IMAGE)

    with pytest.raises(InvariantViolation, match="refusing image/jpeg"):
        await store.save(job_id, b"jpeg", "image/jpeg", Capability.IMAGE)

    assert await store.get(job_id) == first
    assert len(blobs.blobs) == 1
    assert blobs.blobs[first.storage_ref] == (b"png", "image/png")


@pytest.mark.asyncio
async def test_concurrent_insert_conflict_returns_winner(blobs):
    index = InMemoryArtifactIndex()
    store = ArtifactStore(blobs, index)
    job_id = uuid4()
    winner = await ArtifactStore(RecordingBlobStore(), InMemoryArtifactIndex()).save(
        job_id, b"winner", "image/png", Capability.IMAGE
    )

    original_get = index.get_by_job
    calls = 0

    async def get_by_job(lookup_id):
        # First lookup misses, then the other finisher's record appears
        nonlocal calls
        calls += 1
        if calls == 1:
            index.artifacts[job_id] = winner
            return None
        return await original_get(lookup_id)

    index.get_by_job = get_by_job

    result = await store.save(job_id, b"loser", "image/png", Capability.IMAGE)

    assert result is winner


@pytest.mark.asyncio
async def test_in_memory_blob_store_reference():
    store = InMemoryBlobStore()

    blob = await store.put("image/abc.png", b"data", "image/png", Capability.IMAGE)

    assert blob.storage_ref == "memory://image/abc.png"
    assert blob.public_url is None
    assert store.blobs["image/abc.png"] == (b"data", "image/png")


@pytest.mark.asyncio
async def test_local_blob_store_writes_file(tmp_path):
    store = LocalBlobStore(tmp_path)

    blob = await store.put("video/abc.mp4", b"mp4-bytes", "video/mp4", Capability.VIDEO)

    target = tmp_path / "video" / "abc.mp4"
    assert target.read_bytes() == b"mp4-bytes"
    assert blob.storage_ref == "video/abc.mp4"
    assert blob.public_url == target.resolve().as_uri()
    assert not (tmp_path / "video" / "abc.mp4.partial").exists()


@pytest.mark.asyncio
async def test_local_blob_store_overwrites_same_path(tmp_path):
    store = LocalBlobStore(tmp_path)

    await store.put("image/abc.png", b"first", "image/png", Capability.IMAGE)
    await store.put("image/abc.png", b"second", "image/png", Capability.IMAGE)

    assert (tmp_path / "image" / "abc.png").read_bytes() == b"second"


@pytest.mark.asyncio
async def test_local_blob_store_rejects_path_escape(tmp_path):
    store = LocalBlobStore(tmp_path / "artifacts")

    with pytest.raises(StorageError, match="outside artifact root"):
        await store.put("../escape.png", b"data", "image/png", Capability.IMAGE)

    assert not (tmp_path / "escape.png").exists()


def _supabase(handler) -> tuple[httpx.AsyncClient, SupabaseBlobStore]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = SupabaseBlobStore(
        client,
        "https://project.supabase.co/",
        "service-role",
        buckets={Capability.IMAGE: "storyboard-images", Capability.VIDEO: "storyboard-videos"},
    )
    return client, store


@pytest.mark.asyncio
async def test_supabase_upload_uses_capability_bucket():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"Key": "storyboard-videos/video/abc.mp4"})

    client, store = _supabase(handler)
    async with client:
        blob = await store.put("video/abc.mp4", b"mp4", "video/mp4", Capability.VIDEO)

    assert str(requests[0].url) == (
        "https://project.supabase.co/storage/v1/object/storyboard-videos/video/abc.mp4"
    )
    assert requests[0].headers["x-upsert"] == "true"
    assert requests[0].headers["content-type"] == "video/mp4"
    assert requests[0].headers["authorization"] == "Bearer service-role"
    assert requests[0].content == b"mp4"
    assert blob.storage_ref == "storyboard-videos/video/abc.mp4"
    assert blob.public_url == (
        "https://project.supabase.co/storage/v1/object/public/storyboard-videos/video/abc.mp4"
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("status, message", [(403, "access denied"), (404, "not found")])
async def test_supabase_upload_errors(status, message):
    client, store = _supabase(lambda request: httpx.Response(status, text="nope"))

    async with client:
        with pytest.raises(StorageError, match=message):
            await store.put("image/abc.png", b"png", "image/png", Capability.IMAGE)


@pytest.mark.asyncio
async def test_supabase_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, store = _supabase(handler)
    async with client:
        with pytest.raises(StorageError, match="Network error"):
            await store.put("image/abc.png", b"png", "image/png", Capability.IMAGE)
