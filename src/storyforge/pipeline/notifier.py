"""Completion event publishing.

Publishing is best-effort: failures are logged and swallowed, and never
change whether a message is acked or retried.
"""

from typing import Protocol

import httpx
import structlog

from storyforge.schemas.events import CompletionEvent

logger = structlog.get_logger(__name__)


class ResultNotifier(Protocol):
    async def publish(self, event: CompletionEvent) -> None: ...


class LoggingNotifier:
    """Emits completion events as structured log lines."""

    async def publish(self, event: CompletionEvent) -> None:
        logger.info(
            "job.completed",
            job_id=str(event.job_id),
            idempotency_key=event.idempotency_key,
            outcome=event.outcome,
            artifact_ref=event.artifact_ref,
            reason=event.reason,
        )


class WebhookNotifier:
    """POSTs completion events as camelCase JSON to a webhook URL."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 5.0):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def publish(self, event: CompletionEvent) -> None:
        try:
            response = await self.client.post(
                self.url,
                json=event.model_dump(mode="json", by_alias=True),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "notify.webhook_failed",
                job_id=str(event.job_id),
                url=self.url,
                error=str(e),
                error_type=type(e).__name__,
            )


class CompositeNotifier:
    """Fans an event out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: list[ResultNotifier]):
        self.notifiers = list(notifiers)

    async def publish(self, event: CompletionEvent) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.publish(event)
            except Exception as e:
                logger.warning(
                    "notify.failed",
                    notifier=type(notifier).__name__,
                    job_id=str(event.job_id),
                    error=str(e),
                )
