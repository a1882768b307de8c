"""Replay failed audit events once or on a fixed interval."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from slack_ingest.adapters.repository_factory import create_repository
from slack_ingest.config.logging_config import get_logger, setup_logging
from slack_ingest.config.settings import get_settings
from slack_ingest.domain.exceptions import SlackIngestError
from slack_ingest.domain.protocols import RepositoryProtocol
from slack_ingest.observability.metrics import start_metrics_server
from slack_ingest.use_cases.process_event import EventProcessor
from slack_ingest.use_cases.retry_failed_events import (
    RetrySweeper,
    get_event_stats,
    retry_failed_events,
)

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Retry failed Slack events")
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    parser.add_argument("--interval-seconds", type=float, default=None)
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print audit log statistics and exit",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit logs in JSON format")
    return parser.parse_args(argv)


async def _run_forever(sweeper: RetrySweeper) -> None:
    loop = asyncio.get_running_loop()
    for watched_signal in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(watched_signal, sweeper.stop)
    await sweeper.run()


def _log_stats(repository: RepositoryProtocol) -> None:
    stats = get_event_stats(repository)
    logger.info(
        "ingest_event_stats",
        total=stats.total,
        **{status.value.lower(): count for status, count in stats.by_status.items()},
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=args.json_logs or settings.log_json)

    max_attempts = args.max_attempts or settings.retry_max_attempts
    batch_size = args.batch_size or settings.retry_batch_size
    interval_seconds = args.interval_seconds or settings.retry_interval_seconds

    try:
        repository = create_repository(settings)
    except SlackIngestError as exc:
        logger.error("repository_unavailable", error=str(exc))
        return 1

    try:
        if args.stats:
            _log_stats(repository)
            return 0

        processor = EventProcessor(repository)
        if args.run_once:
            result = asyncio.run(
                retry_failed_events(
                    repository,
                    processor,
                    max_attempts=max_attempts,
                    batch_size=batch_size,
                )
            )
            return 0 if result.failed == 0 else 1

        if settings.metrics_port is not None:
            start_metrics_server(settings.metrics_port)

        sweeper = RetrySweeper(
            repository,
            processor,
            interval_seconds=interval_seconds,
            max_attempts=max_attempts,
            batch_size=batch_size,
        )
        asyncio.run(_run_forever(sweeper))
        return 0
    finally:
        repository.close()


if __name__ == "__main__":
    sys.exit(main())
