"""Fallback chain tests.

Covers chain order, permanent-error short circuit, unavailable models,
exhaustion, per-attempt timeouts, deadline handling, resuming a run across
deliveries, model hints and reference-media filtering.
"""

import asyncio
from datetime import timedelta

import pytest
from fakes import FakeClock, ScriptedAdapter

from storyforge.models.job import Capability, GenerationMode
from storyforge.models.provider_attempt import AttemptOutcome
from storyforge.pipeline.fallback import ChainStatus, FallbackChain
from storyforge.services.exceptions import (
    ModelUnavailable,
    PermanentProviderError,
    ProviderTimeout,
    TransientProviderError,
)
from storyforge.services.generation.base import GenerationRequest

REQUEST = GenerationRequest(mode=GenerationMode.TEXT_TO_IMAGE, prompt="A lighthouse in fog")


def deadline(clock: FakeClock, seconds: float = 300):
    return clock.now() + timedelta(seconds=seconds)


@pytest.mark.asyncio
async def test_falls_through_transient_errors_in_order(clock):
    a = ScriptedAdapter("A", TransientProviderError("503 from A"))
    b = ScriptedAdapter("B", ProviderTimeout("B timed out"))
    c = ScriptedAdapter("C", b"png-bytes")
    chain = FallbackChain(Capability.IMAGE, [a, b, c], attempt_timeout=30, clock=clock)
    checkpoints = []

    async def on_attempt(record):
        checkpoints.append(record.model)

    result = await chain.attempt(REQUEST, deadline(clock), on_attempt=on_attempt)

    assert result.status is ChainStatus.SUCCEEDED
    assert [r.model for r in result.attempts] == ["A", "B", "C"]
    assert [r.outcome for r in result.attempts] == [
        AttemptOutcome.TRANSIENT_ERROR,
        AttemptOutcome.TIMEOUT,
        AttemptOutcome.SUCCESS,
    ]
    assert checkpoints == ["A", "B", "C"]
    assert result.media.data == b"png-bytes"
    assert result.media.model == "C"


@pytest.mark.asyncio
async def test_permanent_error_short_circuits(clock):
    a = ScriptedAdapter("A", PermanentProviderError("blocked by content policy"))
    b = ScriptedAdapter("B")
    c = ScriptedAdapter("C")
    chain = FallbackChain(Capability.IMAGE, [a, b, c], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock))

    assert result.status is ChainStatus.PERMANENT_FAILURE
    assert result.error == "blocked by content policy"
    assert len(result.attempts) == 1
    assert b.calls == []
    assert c.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ModelUnavailable("veo-3.1 model or resource not found: 404"),
        ModelUnavailable("veo-3.1 rejected credentials (401): API key invalid"),
        ModelUnavailable("GOOGLE_GENERATIVE_AI_API_KEY not configured"),
    ],
)
async def test_unavailable_model_moves_on_to_next(clock, error):
    a = ScriptedAdapter("A", error)
    b = ScriptedAdapter("B", b"png-bytes")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock))

    assert result.status is ChainStatus.SUCCEEDED
    assert [r.outcome for r in result.attempts] == [
        AttemptOutcome.MODEL_UNAVAILABLE,
        AttemptOutcome.SUCCESS,
    ]
    assert result.attempts[0].error_detail == str(error)
    assert len(b.calls) == 1


@pytest.mark.asyncio
async def test_resumed_run_skips_models_already_tried(clock):
    a = ScriptedAdapter("A")
    b = ScriptedAdapter("B", b"from-b")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock), chain_run=2, tried={"A"})

    assert result.status is ChainStatus.SUCCEEDED
    assert a.calls == []
    assert [(r.model, r.chain_run) for r in result.attempts] == [("B", 2)]


@pytest.mark.asyncio
async def test_resumed_run_with_every_model_tried_is_exhausted(clock):
    a = ScriptedAdapter("A")
    b = ScriptedAdapter("B")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock), tried={"A", "B"})

    assert result.status is ChainStatus.EXHAUSTED
    assert result.attempts == []
    assert a.calls == [] and b.calls == []


@pytest.mark.asyncio
async def test_all_transient_is_exhausted(clock):
    adapters = [ScriptedAdapter(m, TransientProviderError(f"{m} down")) for m in "ABC"]
    chain = FallbackChain(Capability.IMAGE, adapters, attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock))

    assert result.status is ChainStatus.EXHAUSTED
    assert len(result.attempts) == 3
    assert result.error == "C down"


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_is_treated_as_transient(clock):
    a = ScriptedAdapter("A", KeyError("candidates"))
    b = ScriptedAdapter("B", b"ok")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock))

    assert result.status is ChainStatus.SUCCEEDED
    assert result.attempts[0].outcome is AttemptOutcome.TRANSIENT_ERROR
    assert "KeyError" in result.attempts[0].error_detail


@pytest.mark.asyncio
async def test_slow_adapter_hits_per_attempt_timeout(clock):
    async def hang(request):
        await asyncio.sleep(10)

    a = ScriptedAdapter("A", hang)
    b = ScriptedAdapter("B", b"ok")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=0.05, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock))

    assert result.status is ChainStatus.SUCCEEDED
    assert result.attempts[0].outcome is AttemptOutcome.TIMEOUT
    assert [r.model for r in result.attempts] == ["A", "B"]


@pytest.mark.asyncio
async def test_no_attempt_started_after_deadline(clock):
    async def slow_failure(request):
        clock.advance(60)
        raise TransientProviderError("A failed slowly")

    a = ScriptedAdapter("A", slow_failure)
    b = ScriptedAdapter("B")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock, seconds=45))

    assert result.status is ChainStatus.DEADLINE
    assert len(result.attempts) == 1
    assert b.calls == []


@pytest.mark.asyncio
async def test_hint_moves_model_to_front(clock):
    a, b, c = (ScriptedAdapter(m, b"ok") for m in "ABC")
    chain = FallbackChain(Capability.IMAGE, [a, b, c], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock), hint="C")

    assert result.media.model == "C"
    assert a.calls == []
    assert [x.model for x in chain.ordered("B")] == ["B", "A", "C"]


@pytest.mark.asyncio
async def test_unknown_hint_is_ignored(clock):
    a, b = ScriptedAdapter("A", b"ok"), ScriptedAdapter("B", b"ok")
    chain = FallbackChain(Capability.IMAGE, [a, b], attempt_timeout=30, clock=clock)

    result = await chain.attempt(REQUEST, deadline(clock), hint="not-a-model")

    assert result.media.model == "A"


@pytest.mark.asyncio
async def test_reference_requests_skip_text_only_models(clock):
    text_only = ScriptedAdapter("flux-schnell", b"ok", accepts_reference=False)
    editor = ScriptedAdapter("kontext", b"edited")
    chain = FallbackChain(Capability.IMAGE, [text_only, editor], attempt_timeout=30, clock=clock)
    request = GenerationRequest(
        mode=GenerationMode.IMAGE_TO_IMAGE,
        prompt="Make it night",
        reference_media_ref="https://cdn.test/scene1.png",
    )

    result = await chain.attempt(request, deadline(clock))

    assert result.media.data == b"edited"
    assert text_only.calls == []


@pytest.mark.asyncio
async def test_reference_request_without_capable_model_fails_permanently(clock):
    text_only = ScriptedAdapter("flux-schnell", b"ok", accepts_reference=False)
    chain = FallbackChain(Capability.IMAGE, [text_only], attempt_timeout=30, clock=clock)
    request = GenerationRequest(
        mode=GenerationMode.IMAGE_TO_IMAGE,
        prompt="Make it night",
        reference_media_ref="https://cdn.test/scene1.png",
    )

    result = await chain.attempt(request, deadline(clock))

    assert result.status is ChainStatus.PERMANENT_FAILURE
    assert result.attempts == []


def test_chain_requires_adapters():
    with pytest.raises(ValueError):
        FallbackChain(Capability.VIDEO, [], attempt_timeout=30)
