"""Run a channel backfill from the command line with live progress."""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import pytz

sys.path.insert(0, str(Path(__file__).parent.parent))

from slack_ingest.adapters.progress_store import InMemoryProgressStore
from slack_ingest.adapters.repository_factory import create_repository
from slack_ingest.adapters.slack_client import SlackClient
from slack_ingest.config.logging_config import get_logger, setup_logging
from slack_ingest.config.settings import Settings, get_settings
from slack_ingest.domain.exceptions import SlackIngestError
from slack_ingest.domain.models import BackfillStatus
from slack_ingest.observability.metrics import start_metrics_server
from slack_ingest.use_cases.backfill_channel import (
    BackfillLimits,
    BackfillOrchestrator,
    estimate_pull_time,
    validate_backfill_config,
)
from slack_ingest.use_cases.process_event import EventProcessor

logger = get_logger(__name__)

PROGRESS_POLL_SECONDS = 1.0


def _parse_date(value: str, *, end_of_day: bool = False) -> datetime:
    parsed = datetime.strptime(value, "%Y-%m-%d")
    if end_of_day:
        parsed = parsed.replace(hour=23, minute=59, second=59)
    return parsed.replace(tzinfo=pytz.UTC)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill the history of a Slack channel")
    parser.add_argument("channel_id", nargs="?", help="Slack channel id (C..., G..., D...)")
    parser.add_argument("--start-date", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end-date", help="End date (YYYY-MM-DD)")
    parser.add_argument("--page-size", type=int, default=None)
    parser.add_argument(
        "--delay-seconds",
        type=float,
        default=None,
        help="Delay between Slack requests",
    )
    parser.add_argument("--no-threads", action="store_true", help="Skip thread replies")
    parser.add_argument(
        "--skip-side-effects",
        action="store_true",
        help="Do not run PII scanning on imported messages",
    )
    parser.add_argument("--max-concurrency", type=int, default=None)
    parser.add_argument(
        "--list-channels",
        action="store_true",
        help="List channels the bot can read and exit",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="With --list-channels, include channels the bot is not a member of",
    )
    parser.add_argument(
        "--estimate",
        type=int,
        metavar="MESSAGES",
        help="Print the estimated duration for this many messages and exit",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit logs in JSON format")
    return parser.parse_args(argv)


def _build_orchestrator(settings: Settings) -> BackfillOrchestrator:
    if settings.slack_bot_token is None:
        raise SlackIngestError("SLACK_BOT_TOKEN must be set")

    slack_client = SlackClient(
        settings.slack_bot_token.get_secret_value(),
        max_rate_limit_attempts=settings.rate_limit_max_attempts,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
    )
    processor = EventProcessor(create_repository(settings))
    return BackfillOrchestrator(
        slack_client,
        processor,
        InMemoryProgressStore(),
        limits=BackfillLimits.from_settings(settings),
    )


async def _list_channels(orchestrator: BackfillOrchestrator, include_all: bool) -> int:
    channels = (
        await orchestrator.list_all_channels()
        if include_all
        else await orchestrator.list_channels()
    )
    for channel in channels:
        logger.info(
            "channel",
            channel_id=channel.id,
            name=channel.name,
            is_private=channel.is_private,
            is_member=channel.is_member,
            member_count=channel.member_count,
        )
    logger.info("channels_listed", total=len(channels))
    return 0


async def _run_backfill(
    orchestrator: BackfillOrchestrator, args: argparse.Namespace
) -> int:
    config = validate_backfill_config(
        args.channel_id,
        start_date=_parse_date(args.start_date) if args.start_date else None,
        end_date=_parse_date(args.end_date, end_of_day=True) if args.end_date else None,
        include_threads=not args.no_threads,
        page_size=args.page_size,
        delay_seconds=args.delay_seconds,
        skip_side_effects=args.skip_side_effects,
        requesting_principal="cli",
        max_concurrency=args.max_concurrency,
        limits=orchestrator.limits,
    )
    operation = orchestrator.start_backfill(config)

    try:
        while True:
            snapshot = orchestrator.get_progress(operation.id)
            if snapshot is None or snapshot.status.is_terminal:
                break
            logger.info(
                "backfill_progress",
                operation_id=operation.id,
                status=snapshot.status.value,
                progress_percent=round(snapshot.progress_percent, 1),
                processed=snapshot.processed_messages,
                total=snapshot.total_messages,
            )
            await asyncio.sleep(PROGRESS_POLL_SECONDS)
    except asyncio.CancelledError:
        orchestrator.cancel(operation.id)
        raise

    final = await orchestrator.wait(operation.id)
    if final is None:
        return 1
    logger.info(
        "backfill_finished",
        operation_id=final.id,
        status=final.status.value,
        error=final.error_message,
        **final.stats.model_dump(),
    )
    return 0 if final.status == BackfillStatus.COMPLETED else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=args.json_logs or settings.log_json)

    if args.estimate is not None:
        seconds = estimate_pull_time(args.estimate, include_threads=not args.no_threads)
        logger.info("backfill_estimate", messages=args.estimate, seconds=seconds)
        return 0

    if not args.list_channels and not args.channel_id:
        logger.error("channel_id_required")
        return 2

    if settings.metrics_port is not None:
        start_metrics_server(settings.metrics_port)

    try:
        orchestrator = _build_orchestrator(settings)
        if args.list_channels:
            return asyncio.run(_list_channels(orchestrator, args.all))
        return asyncio.run(_run_backfill(orchestrator, args))
    except SlackIngestError as exc:
        logger.error("backfill_cli_failed", error=str(exc))
        return 1
    except KeyboardInterrupt:
        logger.warning("backfill_cli_interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
