"""In-memory queue store: leases, visibility, dead-lettering and metrics."""

import pytest
from fakes import FakeClock

from storyforge.pipeline.queue import POISONED_REASON, InMemoryQueueStore


@pytest.fixture
def queue(clock: FakeClock) -> InMemoryQueueStore:
    return InMemoryQueueStore("image_generation_queue", dead_letter_threshold=3, clock=clock)


@pytest.mark.asyncio
async def test_claim_returns_oldest_visible_first(queue, clock):
    first = await queue.enqueue({"n": 1})
    second = await queue.enqueue({"n": 2})
    await queue.enqueue({"n": 3}, delay=60)

    claimed = await queue.claim_batch(5, lease_seconds=120)

    assert [m.id for m in claimed] == [first, second]
    assert [m.payload for m in claimed] == [{"n": 1}, {"n": 2}]
    assert all(m.read_count == 1 for m in claimed)


@pytest.mark.asyncio
async def test_claim_respects_max_n(queue):
    for n in range(4):
        await queue.enqueue({"n": n})

    assert len(await queue.claim_batch(2, lease_seconds=120)) == 2
    assert len(await queue.claim_batch(5, lease_seconds=120)) == 2


@pytest.mark.asyncio
async def test_leased_message_is_invisible_until_lease_expires(queue, clock):
    message_id = await queue.enqueue({"n": 1})
    (claimed,) = await queue.claim_batch(1, lease_seconds=120)

    assert (claimed.visible_at - clock.now()).total_seconds() == 120
    assert await queue.claim_batch(1, lease_seconds=120) == []

    clock.advance(119)
    assert await queue.claim_batch(1, lease_seconds=120) == []

    clock.advance(1)
    (reclaimed,) = await queue.claim_batch(1, lease_seconds=120)
    assert reclaimed.id == message_id
    assert reclaimed.read_count == 2


@pytest.mark.asyncio
async def test_claimed_copy_is_detached_from_store(queue):
    message_id = await queue.enqueue({"n": 1})
    (claimed,) = await queue.claim_batch(1, lease_seconds=120)

    claimed.payload["n"] = 99
    claimed.read_count = 42

    stored = queue.get(message_id)
    assert stored.read_count == 1


@pytest.mark.asyncio
async def test_ack_removes_message(queue):
    message_id = await queue.enqueue({"n": 1})
    await queue.claim_batch(1, lease_seconds=120)

    assert await queue.ack(message_id) is True
    assert queue.get(message_id) is None
    assert await queue.ack(message_id) is False


@pytest.mark.asyncio
async def test_release_with_delay(queue, clock):
    message_id = await queue.enqueue({"n": 1})
    await queue.claim_batch(1, lease_seconds=120)

    assert await queue.release(message_id, delay=30) is True
    assert await queue.claim_batch(1, lease_seconds=120) == []

    clock.advance(30)
    (claimed,) = await queue.claim_batch(1, lease_seconds=120)
    assert claimed.id == message_id


@pytest.mark.asyncio
async def test_release_without_delay_is_immediately_visible(queue):
    message_id = await queue.enqueue({"n": 1})
    await queue.claim_batch(1, lease_seconds=120)

    await queue.release(message_id)

    (claimed,) = await queue.claim_batch(1, lease_seconds=120)
    assert claimed.id == message_id


@pytest.mark.asyncio
async def test_release_unknown_message_returns_false(queue):
    assert await queue.release(999, delay=10) is False


@pytest.mark.asyncio
async def test_dead_letter_keeps_message_out_of_claims(queue):
    message_id = await queue.enqueue({"n": 1})
    await queue.claim_batch(1, lease_seconds=120)

    assert await queue.dead_letter(message_id, "malformed payload: prompt") is True

    stored = queue.get(message_id)
    assert stored.poisoned
    assert stored.dead_letter_reason == "malformed payload: prompt"
    assert await queue.release(message_id) is False
    assert await queue.claim_batch(5, lease_seconds=120) == []


@pytest.mark.asyncio
async def test_message_is_poisoned_after_threshold_deliveries(queue, clock):
    message_id = await queue.enqueue({"n": 1})

    for _ in range(3):
        (claimed,) = await queue.claim_batch(1, lease_seconds=10)
        assert not claimed.poisoned
        clock.advance(10)

    (poisoned,) = await queue.claim_batch(1, lease_seconds=10)

    assert poisoned.id == message_id
    assert poisoned.poisoned
    assert poisoned.read_count == 4
    assert queue.get(message_id).dead_letter_reason == POISONED_REASON

    clock.advance(10)
    assert await queue.claim_batch(1, lease_seconds=10) == []


@pytest.mark.asyncio
async def test_metrics(queue, clock):
    await queue.enqueue({"n": 1})
    clock.advance(30)
    await queue.enqueue({"n": 2})
    poisoned_id = await queue.enqueue({"n": 3})
    await queue.dead_letter(poisoned_id, "broken")
    await queue.claim_batch(1, lease_seconds=120)

    metrics = await queue.metrics()

    assert metrics.queue_name == "image_generation_queue"
    assert metrics.queue_length == 2
    assert metrics.visible == 1
    assert metrics.in_flight == 1
    assert metrics.poisoned == 1
    assert metrics.oldest_message_age_seconds == 30


@pytest.mark.asyncio
async def test_metrics_on_empty_queue(queue):
    metrics = await queue.metrics()

    assert metrics.queue_length == 0
    assert metrics.oldest_message_age_seconds is None
