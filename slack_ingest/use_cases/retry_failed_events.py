"""Retry sweep over failed audit records.

Failed events are replayed solely from their stored raw payload, reusing the
original audit row. A row stops being eligible once its attempts reach the
configured maximum.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Final

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.exceptions import SlackIngestError
from slack_ingest.domain.models import IngestEventStatus, ProcessingOutcome
from slack_ingest.domain.protocols import AuditLogProtocol
from slack_ingest.observability.metrics import RETRY_SWEEP_EVENTS_TOTAL
from slack_ingest.use_cases.process_event import EventProcessor

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BATCH_SIZE: Final[int] = 100
DEFAULT_INTERVAL_SECONDS: Final[float] = 300.0


@dataclass(slots=True)
class RetrySweepResult:
    """Summary of one retry sweep."""

    examined: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class EventStats:
    """Audit log totals."""

    total: int
    by_status: dict[IngestEventStatus, int]


async def retry_failed_events(
    audit_log: AuditLogProtocol,
    processor: EventProcessor,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> RetrySweepResult:
    """Replay FAILED audit rows whose attempts are below max_attempts.

    Rows are taken oldest first, at most batch_size per sweep. Each row gets its
    attempts incremented and status set to PROCESSING before the replay.

    Args:
        audit_log: Audit log holding the failed rows
        processor: Processor used to replay the stored payloads
        max_attempts: Rows with this many attempts or more are left alone
        batch_size: Maximum rows replayed in one sweep

    Returns:
        Per-outcome counters and the outcome of every replayed row
    """
    failed_events = await asyncio.to_thread(
        audit_log.list_failed_ingest_events, max_attempts, batch_size
    )
    result = RetrySweepResult(examined=len(failed_events))
    if not failed_events:
        logger.debug("retry_sweep_nothing_to_do")
        return result

    logger.info("retry_sweep_started", candidates=len(failed_events))

    for event in failed_events:
        attempts = event.attempts + 1
        await asyncio.to_thread(
            audit_log.update_ingest_event,
            event.id,
            status=IngestEventStatus.PROCESSING,
            attempts=attempts,
            last_attempt_at=datetime.now(UTC),
        )
        replay = event.model_copy(
            update={"attempts": attempts, "status": IngestEventStatus.PROCESSING}
        )
        outcome = await processor.process(event.raw_payload, audit_event=replay)

        result.outcomes[event.id] = outcome.outcome.value
        if outcome.outcome == ProcessingOutcome.FAILED:
            result.failed += 1
        elif outcome.outcome == ProcessingOutcome.SKIPPED:
            result.skipped += 1
        else:
            result.succeeded += 1
        RETRY_SWEEP_EVENTS_TOTAL.labels(outcome=outcome.outcome.value).inc()

        logger.info(
            "retry_sweep_event_replayed",
            ingest_event_id=event.id,
            attempts=attempts,
            outcome=outcome.outcome.value,
            error=outcome.error,
        )

    logger.info(
        "retry_sweep_completed",
        examined=result.examined,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped=result.skipped,
    )
    return result


def get_event_stats(audit_log: AuditLogProtocol) -> EventStats:
    """Return the total number of audit rows and the count per status."""
    counts = audit_log.count_ingest_events_by_status()
    by_status = {status: counts.get(status, 0) for status in IngestEventStatus}
    return EventStats(total=sum(by_status.values()), by_status=by_status)


class RetrySweeper:
    """Runs the retry sweep on a fixed interval until stopped."""

    def __init__(
        self,
        audit_log: AuditLogProtocol,
        processor: EventProcessor,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._audit_log = audit_log
        self._processor = processor
        self._interval_seconds = interval_seconds
        self._max_attempts = max_attempts
        self._batch_size = batch_size
        self._stop_event = asyncio.Event()
        self.sweeps_completed = 0

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        logger.info("retry_sweeper_started", interval_seconds=self._interval_seconds)
        while not self._stop_event.is_set():
            try:
                await retry_failed_events(
                    self._audit_log,
                    self._processor,
                    max_attempts=self._max_attempts,
                    batch_size=self._batch_size,
                )
            except SlackIngestError as exc:
                logger.error("retry_sweep_failed", error=str(exc))
            self.sweeps_completed += 1

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._interval_seconds
                )
            except TimeoutError:
                continue
        logger.info("retry_sweeper_stopped", sweeps=self.sweeps_completed)


__all__ = [
    "EventStats",
    "RetrySweepResult",
    "RetrySweeper",
    "get_event_stats",
    "retry_failed_events",
]
