"""Channel backfill use case.

Pulls the full history of one Slack channel (optionally with thread replies)
and feeds every message through the event processor's creation path. Each
operation runs as its own asyncio task and reports progress through the
progress store:

    QUEUED -> RUNNING -> COMPLETED | FAILED | CANCELLED

Phases run strictly in sequence: channel metadata and access check, paginated
fetch (5-20%), message processing (20-70%), thread expansion (70-90%),
completion (100%). Cancellation is cooperative and checked at every phase
boundary, before every Slack call and every ``CANCELLATION_CHECK_INTERVAL``
processed messages.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from slack_ingest.config.logging_config import bind_context, get_logger, unbind_context
from slack_ingest.domain import backfill_constants as bc
from slack_ingest.domain.exceptions import (
    AccessDeniedError,
    BackfillCancelled,
    SlackIngestError,
    ValidationError,
)
from slack_ingest.domain.models import (
    BackfillConfig,
    BackfillOperation,
    BackfillStats,
    BackfillStatus,
    ChannelInfo,
    ProcessingOutcome,
    ProcessingResult,
)
from slack_ingest.domain.protocols import ProgressStoreProtocol, SlackClientProtocol
from slack_ingest.observability.metrics import (
    BACKFILL_DURATION_SECONDS,
    BACKFILL_OPERATIONS_TOTAL,
)
from slack_ingest.services.envelope import build_history_payload
from slack_ingest.use_cases.process_event import EventProcessor

if TYPE_CHECKING:
    from slack_ingest.config.settings import Settings

logger = get_logger(__name__)

AsyncSleepCallable = Callable[[float], Awaitable[None]]

CANCELLED_MESSAGE = "Operation cancelled by user"


class CancellationToken:
    """Per-operation cancellation flag checked at cooperative checkpoints."""

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise BackfillCancelled(self.operation_id)


@dataclass(frozen=True, slots=True)
class BackfillLimits:
    """Bounds and defaults applied to every backfill request."""

    default_page_size: int = bc.DEFAULT_PAGE_SIZE
    max_page_size: int = bc.MAX_PAGE_SIZE
    default_delay_seconds: float = bc.DEFAULT_DELAY_SECONDS
    min_delay_seconds: float = bc.MIN_DELAY_SECONDS
    max_concurrency: int = 1
    thread_replies_limit: int = bc.THREAD_REPLIES_LIMIT
    completed_retention_seconds: float = bc.COMPLETED_RETENTION_SECONDS
    failed_retention_seconds: float = bc.FAILED_RETENTION_SECONDS
    max_record_age_seconds: float = bc.MAX_RECORD_AGE_SECONDS

    @classmethod
    def from_settings(cls, settings: Settings) -> BackfillLimits:
        return cls(
            default_page_size=settings.backfill_default_page_size,
            max_page_size=settings.backfill_max_page_size,
            default_delay_seconds=settings.backfill_default_delay_seconds,
            min_delay_seconds=settings.backfill_min_delay_seconds,
            max_concurrency=settings.backfill_max_concurrency,
            thread_replies_limit=settings.backfill_thread_replies_limit,
            completed_retention_seconds=settings.backfill_completed_retention_seconds,
            failed_retention_seconds=settings.backfill_failed_retention_seconds,
            max_record_age_seconds=settings.backfill_max_record_age_seconds,
        )


def validate_backfill_config(
    channel_id: str,
    *,
    channel_name: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    include_threads: bool = True,
    page_size: int | None = None,
    delay_seconds: float | None = None,
    skip_side_effects: bool = False,
    requesting_principal: str | None = None,
    max_concurrency: int | None = None,
    limits: BackfillLimits | None = None,
) -> BackfillConfig:
    """Build a BackfillConfig, applying defaults and clamping to limits.

    Page size falls back to the default when missing or not positive and is
    capped at the maximum. The delay falls back to the default when missing and
    never drops below the minimum.

    Raises:
        ValidationError: Invalid channel id or start_date after end_date
    """
    bounds = limits or BackfillLimits()

    resolved_page_size = (
        page_size if page_size and page_size > 0 else bounds.default_page_size
    )
    resolved_delay = (
        delay_seconds if delay_seconds is not None else bounds.default_delay_seconds
    )
    resolved_concurrency = max_concurrency or bounds.max_concurrency

    try:
        return BackfillConfig(
            channel_id=channel_id,
            channel_name=channel_name,
            start_date=start_date,
            end_date=end_date,
            include_threads=include_threads,
            page_size=min(resolved_page_size, bounds.max_page_size),
            delay_seconds=max(resolved_delay, bounds.min_delay_seconds),
            skip_side_effects=skip_side_effects,
            requesting_principal=requesting_principal,
            max_concurrency=max(1, resolved_concurrency),
        )
    except PydanticValidationError as exc:
        messages = "; ".join(error["msg"] for error in exc.errors())
        raise ValidationError(f"Invalid backfill configuration: {messages}") from exc


def estimate_pull_time(message_count: int, include_threads: bool = True) -> float:
    """Rough wall-clock estimate in seconds for backfilling message_count messages.

    One second per page of 100 messages, plus 20% for thread expansion and 50%
    processing overhead.

    Example:
        >>> estimate_pull_time(250, include_threads=False)
        4.5
    """
    if message_count <= 0:
        return 0.0
    estimate = math.ceil(message_count / 100) * 1.0
    if include_threads:
        estimate *= 1.2
    return round(estimate * 1.5, 3)


def _fetch_progress(fetched: int) -> float:
    return min(
        bc.PROGRESS_FETCH_END,
        bc.PROGRESS_FETCH_START
        + (fetched / bc.PROGRESS_FETCH_SCALE_MESSAGES)
        * (bc.PROGRESS_FETCH_END - bc.PROGRESS_FETCH_START),
    )


def _band_progress(done: int, total: int, start: float, end: float) -> float:
    if total <= 0:
        return end
    return start + math.floor(done / total * (end - start))


def _is_thread_root(message: dict[str, Any]) -> bool:
    ts = message.get("ts")
    reply_count = message.get("reply_count") or 0
    return bool(ts) and reply_count > 0 and message.get("thread_ts", ts) == ts


class BackfillOrchestrator:
    """Runs channel backfills as detached asyncio tasks."""

    def __init__(
        self,
        slack_client: SlackClientProtocol,
        processor: EventProcessor,
        progress_store: ProgressStoreProtocol,
        *,
        limits: BackfillLimits | None = None,
        sleep: AsyncSleepCallable | None = None,
    ) -> None:
        self._slack = slack_client
        self._processor = processor
        self._progress_store = progress_store
        self._limits = limits or BackfillLimits()
        self._sleep = sleep or asyncio.sleep
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    @property
    def limits(self) -> BackfillLimits:
        return self._limits

    # Control interface -----------------------------------------------

    def start_backfill(self, config: BackfillConfig) -> BackfillOperation:
        """Register a QUEUED operation and schedule it on the running loop.

        Returns a detached snapshot; read later states from the progress
        store. Must be called from within a running event loop.
        """
        config = config.model_copy(
            update={
                "page_size": min(config.page_size, self._limits.max_page_size),
                "delay_seconds": max(
                    config.delay_seconds, self._limits.min_delay_seconds
                ),
            }
        )
        operation = BackfillOperation(
            id=str(uuid4()),
            channel_id=config.channel_id,
            channel_name=config.channel_name or config.channel_id,
            requesting_principal=config.requesting_principal,
        )
        token = CancellationToken(operation.id)
        self._tokens[operation.id] = token
        self._progress_store.set(operation)

        task = asyncio.get_running_loop().create_task(
            self._run(operation, config, token),
            name=f"backfill-{operation.id}",
        )
        self._tasks[operation.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(operation.id, None))

        logger.info(
            "backfill_queued",
            operation_id=operation.id,
            channel_id=config.channel_id,
            page_size=config.page_size,
            delay_seconds=config.delay_seconds,
            include_threads=config.include_threads,
            requesting_principal=config.requesting_principal,
        )
        return operation.model_copy(deep=True)

    def get_progress(self, operation_id: str) -> BackfillOperation | None:
        return self._progress_store.get(operation_id)

    def cancel(self, operation_id: str) -> bool:
        """Request cancellation; True only if the operation is QUEUED or RUNNING."""
        operation = self._progress_store.get(operation_id)
        token = self._tokens.get(operation_id)
        if operation is None or token is None or not operation.is_active:
            return False

        token.cancel()
        logger.info("backfill_cancel_requested", operation_id=operation_id)
        return True

    async def wait(self, operation_id: str) -> BackfillOperation | None:
        """Wait for a running operation to finish and return its final snapshot."""
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.shield(task)
        return self._progress_store.get(operation_id)

    def list_active(self) -> list[BackfillOperation]:
        return [op for op in self.list_all() if op.is_active]

    def list_all(self) -> list[BackfillOperation]:
        return sorted(
            self._progress_store.list(),
            key=lambda op: op.created_at,
            reverse=True,
        )

    def sweep_expired(self) -> int:
        """Drop progress records older than the maximum record age."""
        removed = self._progress_store.sweep(self._limits.max_record_age_seconds)
        for operation_id in list(self._tokens):
            if self._progress_store.get(operation_id) is None:
                self._tokens.pop(operation_id, None)
        return removed

    async def list_channels(self) -> list[ChannelInfo]:
        return await self._slack.list_channels()

    async def list_all_channels(self) -> list[ChannelInfo]:
        return await self._slack.list_all_channels()

    async def shutdown(self) -> None:
        """Cancel running operations and pending evictions."""
        for token in self._tokens.values():
            token.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()

    # Operation body ---------------------------------------------------

    async def _run(
        self,
        operation: BackfillOperation,
        config: BackfillConfig,
        token: CancellationToken,
    ) -> None:
        started = time.monotonic()
        bind_context(operation_id=operation.id, channel_id=operation.channel_id)
        try:
            token.raise_if_cancelled()
            operation.status = BackfillStatus.RUNNING
            operation.started_at = datetime.now(UTC)
            self._persist(operation)
            logger.info("backfill_started")

            channel = await self._check_channel_access(config, token)
            operation.channel_name = config.channel_name or channel.name
            operation.progress_percent = bc.PROGRESS_FETCH_START
            self._persist(operation)

            token.raise_if_cancelled()
            messages = await self._fetch_history(operation, config, token)

            token.raise_if_cancelled()
            await self._process_messages(operation, config, token, messages)

            if config.include_threads:
                token.raise_if_cancelled()
                await self._expand_threads(operation, config, token, messages)

            operation.status = BackfillStatus.COMPLETED
            operation.progress_percent = bc.PROGRESS_COMPLETE
            logger.info(
                "backfill_completed",
                total_messages=operation.total_messages,
                new_messages=operation.stats.new_messages,
                duplicate_messages=operation.stats.duplicate_messages,
                failed_messages=operation.stats.failed_messages,
                thread_replies_fetched=operation.stats.thread_replies_fetched,
            )
        except BackfillCancelled:
            operation.status = BackfillStatus.CANCELLED
            operation.error_message = CANCELLED_MESSAGE
            logger.info("backfill_cancelled", processed=operation.processed_messages)
        except asyncio.CancelledError:
            operation.status = BackfillStatus.CANCELLED
            operation.error_message = CANCELLED_MESSAGE
            logger.warning("backfill_task_cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            operation.status = BackfillStatus.FAILED
            operation.error_message = str(exc)
            logger.error(
                "backfill_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                processed=operation.processed_messages,
            )
        finally:
            operation.completed_at = datetime.now(UTC)
            self._persist(operation)
            self._schedule_eviction(operation)
            BACKFILL_OPERATIONS_TOTAL.labels(status=operation.status.value).inc()
            BACKFILL_DURATION_SECONDS.labels(status=operation.status.value).observe(
                time.monotonic() - started
            )
            unbind_context("operation_id", "channel_id")

    async def _check_channel_access(
        self, config: BackfillConfig, token: CancellationToken
    ) -> ChannelInfo:
        channel = await self._slack.get_channel_metadata(
            config.channel_id, cancel_check=token.raise_if_cancelled
        )
        if channel.is_private and not channel.is_member:
            logger.warning("backfill_access_denied", channel_name=channel.name)
            raise AccessDeniedError(
                f"Bot is not a member of private channel {config.channel_id}"
            )
        return channel

    async def _fetch_history(
        self,
        operation: BackfillOperation,
        config: BackfillConfig,
        token: CancellationToken,
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        cursor: str | None = None
        pages = 0

        while True:
            token.raise_if_cancelled()
            page = await self._slack.list_messages(
                config.channel_id,
                cursor=cursor,
                limit=config.page_size,
                oldest=config.start_date,
                latest=config.end_date,
                cancel_check=token.raise_if_cancelled,
            )
            pages += 1
            messages.extend(page.messages)

            operation.total_messages = len(messages)
            operation.progress_percent = max(
                operation.progress_percent, _fetch_progress(len(messages))
            )
            self._persist(operation)
            logger.info(
                "backfill_page_fetched",
                page=pages,
                page_messages=len(page.messages),
                fetched=len(messages),
                has_more=page.has_more,
            )

            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor
            await self._sleep(config.delay_seconds)

        return messages

    async def _process_messages(
        self,
        operation: BackfillOperation,
        config: BackfillConfig,
        token: CancellationToken,
        messages: list[dict[str, Any]],
    ) -> None:
        total = len(messages)
        semaphore = asyncio.Semaphore(config.max_concurrency)

        async def _process_one(message: dict[str, Any]) -> ProcessingResult:
            async with semaphore:
                return await self._processor.process(
                    build_history_payload(message, config.channel_id),
                    skip_side_effects=config.skip_side_effects,
                )

        for offset in range(0, total, bc.CANCELLATION_CHECK_INTERVAL):
            token.raise_if_cancelled()
            chunk = messages[offset : offset + bc.CANCELLATION_CHECK_INTERVAL]
            if config.max_concurrency > 1:
                results = await asyncio.gather(*(_process_one(m) for m in chunk))
            else:
                results = [await _process_one(m) for m in chunk]

            for result in results:
                self._tally(operation.stats, result)
            operation.processed_messages += len(chunk)
            operation.progress_percent = max(
                operation.progress_percent,
                _band_progress(
                    operation.processed_messages,
                    total,
                    bc.PROGRESS_PROCESS_START,
                    bc.PROGRESS_PROCESS_END,
                ),
            )
            if (
                operation.processed_messages % bc.PROGRESS_PERSIST_INTERVAL == 0
                or operation.processed_messages == total
            ):
                self._persist(operation)

        operation.progress_percent = max(
            operation.progress_percent, bc.PROGRESS_PROCESS_END
        )
        self._persist(operation)

    async def _expand_threads(
        self,
        operation: BackfillOperation,
        config: BackfillConfig,
        token: CancellationToken,
        messages: list[dict[str, Any]],
    ) -> None:
        roots = [message for message in messages if _is_thread_root(message)]
        total = len(roots)
        logger.info("backfill_threads_started", threads=total)

        for index, root in enumerate(roots, start=1):
            token.raise_if_cancelled()
            thread_ts = str(root["ts"])
            try:
                replies = await self._slack.list_thread_replies(
                    config.channel_id,
                    thread_ts,
                    limit=self._limits.thread_replies_limit,
                    cancel_check=token.raise_if_cancelled,
                )
            except SlackIngestError as exc:
                logger.warning(
                    "backfill_thread_fetch_failed",
                    thread_ts=thread_ts,
                    error=str(exc),
                )
                replies = []

            for reply in replies:
                result = await self._processor.process(
                    build_history_payload(reply, config.channel_id, thread_reply=True),
                    skip_side_effects=config.skip_side_effects,
                )
                self._tally(operation.stats, result)
            operation.stats.thread_replies_fetched += len(replies)
            operation.threads_processed = index

            operation.progress_percent = max(
                operation.progress_percent,
                _band_progress(
                    index, total, bc.PROGRESS_THREADS_START, bc.PROGRESS_THREADS_END
                ),
            )
            if index % bc.THREAD_PROGRESS_PERSIST_INTERVAL == 0 or index == total:
                self._persist(operation)

            if index < total:
                await self._sleep(config.delay_seconds)

    # Helpers ----------------------------------------------------------

    @staticmethod
    def _tally(stats: BackfillStats, result: ProcessingResult) -> None:
        if result.outcome == ProcessingOutcome.SUCCESS:
            stats.new_messages += 1
        elif result.outcome == ProcessingOutcome.DUPLICATE:
            stats.duplicate_messages += 1
        elif result.outcome == ProcessingOutcome.FAILED:
            stats.failed_messages += 1
            logger.warning("backfill_message_failed", error=result.error)

    def _persist(self, operation: BackfillOperation) -> None:
        self._progress_store.set(operation)

    def _schedule_eviction(self, operation: BackfillOperation) -> None:
        retention = (
            self._limits.completed_retention_seconds
            if operation.status == BackfillStatus.COMPLETED
            else self._limits.failed_retention_seconds
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        def _evict() -> None:
            self._evictions.pop(operation.id, None)
            self._tokens.pop(operation.id, None)
            if self._progress_store.delete(operation.id):
                logger.debug("backfill_progress_evicted", operation_id=operation.id)

        self._evictions[operation.id] = loop.call_later(retention, _evict)


__all__ = [
    "BackfillLimits",
    "BackfillOrchestrator",
    "CancellationToken",
    "estimate_pull_time",
    "validate_backfill_config",
]
