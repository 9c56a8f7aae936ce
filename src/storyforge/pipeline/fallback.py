"""Ordered fallback across the models of one capability.

Adapters are tried in configured order. A transient failure, a timeout or an
unavailable model (unknown id, rejected credentials) moves on to the next
model; a permanent failure stops the chain because the same request would be
rejected everywhere (content policy, malformed input).

A chain run can span several deliveries of the same message: models that
already failed in the current run are skipped, so a run cut short by the
pass deadline resumes with the next model instead of starting over.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Collection

import httpx
import structlog

from storyforge.core.clock import Clock, SystemClock
from storyforge.core.config import Settings
from storyforge.models.job import Capability
from storyforge.models.provider_attempt import AttemptOutcome
from storyforge.services.exceptions import (
    ModelUnavailable,
    PermanentProviderError,
    ProviderTimeout,
    TransientProviderError,
)
from storyforge.services.generation.base import GeneratedMedia, GenerationRequest, ProviderAdapter
from storyforge.services.generation.registry import build_adapter, resolve_models

logger = structlog.get_logger(__name__)


class ChainStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PERMANENT_FAILURE = "permanent_failure"
    EXHAUSTED = "exhausted"
    DEADLINE = "deadline"


@dataclass(frozen=True)
class AttemptRecord:
    """Outcome of one adapter call, before it is written to the ledger."""

    model: str
    started_at: datetime
    duration_ms: int
    outcome: AttemptOutcome
    error_detail: str | None = None
    chain_run: int = 1


@dataclass
class ChainResult:
    status: ChainStatus
    attempts: list[AttemptRecord] = field(default_factory=list)
    media: GeneratedMedia | None = None
    error: str | None = None


class FallbackChain:
    """Runs a request through the capability's adapters until one succeeds."""

    def __init__(
        self,
        capability: Capability,
        adapters: list[ProviderAdapter],
        attempt_timeout: float,
        clock: Clock | None = None,
    ):
        """Initialize chain.

        Args:
            capability: Capability every adapter produces
            adapters: Adapters in fallback order
            attempt_timeout: Upper bound in seconds for a single adapter call
            clock: Time source for deadline checks
        """
        if not adapters:
            raise ValueError(f"Fallback chain for {capability.value} needs at least one adapter")
        self.capability = capability
        self.adapters = list(adapters)
        self.attempt_timeout = attempt_timeout
        self.clock = clock or SystemClock()

    @property
    def models(self) -> list[str]:
        return [adapter.model for adapter in self.adapters]

    def ordered(self, hint: str | None = None) -> list[ProviderAdapter]:
        """Adapters in try order; a hint naming a chain model moves it to the front."""
        if not hint:
            return list(self.adapters)
        preferred = [a for a in self.adapters if a.model == hint]
        if not preferred:
            logger.warning(
                "chain.hint_ignored",
                capability=self.capability.value,
                hint=hint,
                models=self.models,
            )
            return list(self.adapters)
        return preferred + [a for a in self.adapters if a.model != hint]

    async def attempt(
        self,
        request: GenerationRequest,
        deadline: datetime,
        on_attempt: Callable[[AttemptRecord], Awaitable[object]] | None = None,
        hint: str | None = None,
        chain_run: int = 1,
        tried: Collection[str] = (),
    ) -> ChainResult:
        """Try each adapter in order until success, permanent failure or deadline.

        Args:
            request: Generation request
            deadline: No adapter call is started or allowed to run past this time
            on_attempt: Called with each attempt as soon as it finishes (checkpoint)
            hint: Optional model to try first
            chain_run: Run number stamped on each attempt
            tried: Models that already failed in this run on an earlier delivery

        Returns:
            ChainResult with the attempts made in this call
        """
        adapters = self.ordered(hint)
        if request.reference_media_ref:
            skipped = [a.model for a in adapters if not getattr(a, "accepts_reference", True)]
            if skipped:
                logger.info("chain.models_skipped", reason="no reference input", models=skipped)
            adapters = [a for a in adapters if getattr(a, "accepts_reference", True)]
            if not adapters:
                return ChainResult(
                    status=ChainStatus.PERMANENT_FAILURE,
                    error=f"No {self.capability.value} model in the chain accepts reference media",
                )

        if tried:
            resumed = [a for a in adapters if a.model not in tried]
            logger.info(
                "chain.resumed",
                chain_run=chain_run,
                tried=sorted(tried),
                remaining=[a.model for a in resumed],
            )
            adapters = resumed

        result = ChainResult(status=ChainStatus.EXHAUSTED)

        for adapter in adapters:
            remaining = (deadline - self.clock.now()).total_seconds()
            if remaining <= 0:
                result.status = ChainStatus.DEADLINE
                result.error = "deadline reached before next model"
                return result

            timeout = min(self.attempt_timeout, remaining)
            bounded_by_deadline = remaining < self.attempt_timeout
            started_at = self.clock.now()
            start = time.monotonic()
            logger.info("chain.attempt.started", model=adapter.model, timeout=round(timeout, 1))

            media = None
            error_detail = None
            try:
                media = await asyncio.wait_for(adapter.generate(request), timeout=timeout)
                outcome = AttemptOutcome.SUCCESS
            except asyncio.TimeoutError:
                outcome = AttemptOutcome.TIMEOUT
                error_detail = f"{adapter.model} did not respond within {timeout:.1f}s"
            except ModelUnavailable as e:
                outcome = AttemptOutcome.MODEL_UNAVAILABLE
                error_detail = str(e)
            except ProviderTimeout as e:
                outcome = AttemptOutcome.TIMEOUT
                error_detail = str(e)
            except TransientProviderError as e:
                outcome = AttemptOutcome.TRANSIENT_ERROR
                error_detail = str(e)
            except PermanentProviderError as e:
                outcome = AttemptOutcome.PERMANENT_ERROR
                error_detail = str(e)
            except Exception as e:
                # Unclassified adapter bugs are retried like transient errors
                outcome = AttemptOutcome.TRANSIENT_ERROR
                error_detail = f"Unexpected {type(e).__name__}: {e}"
                logger.error(
                    "chain.attempt.unexpected_error",
                    model=adapter.model,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            record = AttemptRecord(
                model=adapter.model,
                started_at=started_at,
                duration_ms=int((time.monotonic() - start) * 1000),
                outcome=outcome,
                error_detail=error_detail,
                chain_run=chain_run,
            )
            result.attempts.append(record)
            if on_attempt is not None:
                await on_attempt(record)

            if outcome is AttemptOutcome.SUCCESS:
                logger.info(
                    "chain.succeeded",
                    model=adapter.model,
                    attempt=len(result.attempts),
                    duration_ms=record.duration_ms,
                )
                result.status = ChainStatus.SUCCEEDED
                result.media = media
                return result

            logger.warning(
                "chain.attempt.failed",
                model=adapter.model,
                outcome=outcome.value,
                error=error_detail,
            )

            if outcome is AttemptOutcome.PERMANENT_ERROR:
                result.status = ChainStatus.PERMANENT_FAILURE
                result.error = error_detail
                return result

            if outcome is AttemptOutcome.TIMEOUT and bounded_by_deadline:
                result.status = ChainStatus.DEADLINE
                result.error = error_detail
                return result

            result.error = error_detail

        logger.warning("chain.exhausted", capability=self.capability.value, models=self.models)
        return result


def build_fallback_chains(
    settings: Settings, client: httpx.AsyncClient, clock: Clock | None = None
) -> dict[Capability, FallbackChain]:
    """Build one chain per capability from the configured model lists.

    Raises:
        ValueError: A configured chain is empty or names an unknown model
    """
    chains = {}
    for capability, model_ids, attempt_timeout in (
        (Capability.IMAGE, settings.image_model_list, settings.image_attempt_timeout_seconds),
        (Capability.VIDEO, settings.video_model_list, settings.video_attempt_timeout_seconds),
    ):
        models = resolve_models(model_ids, capability)
        chains[capability] = FallbackChain(
            capability=capability,
            adapters=[build_adapter(model, settings, client) for model in models],
            attempt_timeout=attempt_timeout,
            clock=clock,
        )
    return chains
