"""CLI entry point for storyforge.cli module.

Enables execution via: python -m storyforge.cli {enqueue,process} [OPTIONS]
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from storyforge.cli import enqueue, process_queue
from storyforge.core.config import Settings, configure_logging

logger = structlog.get_logger()

COMMANDS = {
    "enqueue": enqueue,
    "process": process_queue,
}


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="python -m storyforge.cli",
        description="Enqueue and process storyboard media generation jobs",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands_help = {
        "enqueue": "Put generation requests on the queue",
        "process": "Run a processing pass",
    }
    for name, module in COMMANDS.items():
        module.add_arguments(commands.add_parser(name, help=commands_help[name]))

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code from the selected command
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    try:
        return await COMMANDS[args.command].async_main(args, settings)
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
