"""CLI command for running a processing pass.

Usage:
    python -m storyforge.cli process [OPTIONS]

Examples:
    # One pass over both queues
    python -m storyforge.cli process

    # Drain the video queue with a 10 minute budget
    python -m storyforge.cli process --drain --capability video --max-wall-clock 600
"""

import sys
from argparse import ArgumentParser, Namespace

import structlog

from storyforge.core.config import Settings
from storyforge.models.job import Capability
from storyforge.pipeline import open_pipeline
from storyforge.services.exceptions import QueueUnavailable

logger = structlog.get_logger()


def add_arguments(parser: ArgumentParser) -> None:
    """Register the process options."""
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Repeat passes until the queue is empty or the budget is spent",
    )
    parser.add_argument(
        "--capability",
        choices=[c.value for c in Capability],
        help="Only process this capability's queue (default: all)",
    )
    parser.add_argument(
        "--max-messages",
        type=int,
        help="Messages claimed per pass (default: capability batch size)",
    )
    parser.add_argument(
        "--max-wall-clock",
        type=float,
        help="Time budget in seconds (default: the capability pass budget)",
    )


async def async_main(args: Namespace, settings: Settings) -> int:
    """Run the pass and print its summary.

    Returns:
        Exit code: 0 (success), 1 (queue unavailable), 2 (some jobs failed)
    """
    logger.info(
        "cli.started",
        command="process",
        drain=args.drain,
        capability=args.capability or "all",
        queue_backend=settings.queue_backend,
    )

    try:
        async with open_pipeline(settings) as pipeline:
            summary = await pipeline.run(
                mode="drain" if args.drain else "single",
                capability=Capability(args.capability) if args.capability else None,
                max_messages=args.max_messages,
                max_wall_clock=args.max_wall_clock,
            )
    except QueueUnavailable as e:
        logger.error("cli.queue_unavailable", error=str(e))
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    print(summary.model_dump_json(by_alias=True, indent=2))

    if summary.failed or summary.errors or summary.invariant_violations:
        return 2
    return 0
