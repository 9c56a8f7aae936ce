"""Background poller for the generation queues.

The schedule-tick trigger for deployments without an external scheduler:
every POLL_INTERVAL_SECONDS it drains the image and video queues through the
same entry point as POST /process.
"""

import asyncio

import structlog

from storyforge.core.config import Settings
from storyforge.pipeline import Pipeline
from storyforge.services.exceptions import QueueUnavailable

logger = structlog.get_logger(__name__)


async def run_generation_worker(pipeline: Pipeline, settings: Settings) -> None:
    """Main worker loop.

    Queue outages are logged and retried on the next tick. Any other error
    propagates so the resilient worker wrapper restarts the loop.

    Args:
        pipeline: Job pipeline to drive
        settings: Application settings (poll interval, pass budgets)
    """
    logger.info(
        "worker.started",
        worker="generation",
        poll_interval=settings.poll_interval_seconds,
        image_pass_budget=settings.image_pass_max_wall_clock_seconds,
        video_pass_budget=settings.video_pass_max_wall_clock_seconds,
    )

    try:
        while True:
            try:
                summary = await pipeline.run(mode="drain")
                if summary.processed or summary.deferred:
                    logger.info("worker.tick", worker="generation", **summary.model_dump())
            except QueueUnavailable as e:
                logger.warning("worker.queue_unavailable", worker="generation", error=str(e))

            await asyncio.sleep(settings.poll_interval_seconds)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="generation")
        raise
