"""
Command line entry point.

Usage:
    feed-digest [run|daemon|health|test] [--feeds PATH] [--watch-words PATH]
                [--env-file PATH] [--log-level LEVEL]
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from feed_digest.core.config import AppConfig, load_config
from feed_digest.core.daemon import Daemon
from feed_digest.core.errors import FeedDigestError
from feed_digest.core.log_handler import configure_logging
from feed_digest.core.pipeline import build_runner

logger = logging.getLogger(__name__)

COMMANDS = ("run", "daemon", "health", "test")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="feed-digest",
        description="Fetch RSS feeds, summarize them by category and write markdown digests.",
    )
    parser.add_argument("command", nargs="?", default="run", choices=COMMANDS)
    parser.add_argument("--feeds", help="Path to the feeds JSON file")
    parser.add_argument("--watch-words", help="Path to the watch words JSON file")
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("--log-level", help="Logging level (overrides LOG_LEVEL)")
    return parser.parse_args(argv)


async def run_command(command: str, config: AppConfig) -> int:
    """Execute one CLI command and return the process exit code."""
    runner = build_runner(config)
    try:
        if command == "health":
            healthy = await runner.health_check()
            logger.info("Health check %s", "passed" if healthy else "failed")
            return 0 if healthy else 1

        if command == "daemon":
            daemon = Daemon(config, runner)
            return await daemon.serve()

        if command == "test":
            summary = await runner.test_run()
        else:
            summary = await runner.run()
        logger.info("Documents written: %d", len(summary.documents))
        return 0
    finally:
        await runner.aclose()


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = load_config(
            feeds_file=args.feeds,
            watch_words_file=args.watch_words,
            env_file=args.env_file,
        )
    except FeedDigestError as e:
        configure_logging(args.log_level or "INFO")
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    level = args.log_level or ("DEBUG" if config.debug else config.log_level)
    configure_logging(level, config.log_file)

    try:
        config.require_credentials()
        exit_code = asyncio.run(run_command(args.command, config))
    except FeedDigestError as e:
        logger.error("Fatal error: %s", e)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
