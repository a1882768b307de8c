"""Event processing use case.

Applies one inbound Slack event to the message store. Every event gets a
write-ahead audit row before any side effect, moves through PROCESSING and ends
in SUCCESS, FAILED or SKIPPED. ``EventProcessor.process`` never raises; the
caller always receives a ``ProcessingResult``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, Final

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.envelopes import (
    EventEnvelope,
    MessageCreatedEvent,
    MessageDeletedEvent,
    MessageEditedEvent,
    UnknownEvent,
    VerificationEnvelope,
)
from slack_ingest.domain.exceptions import (
    DuplicateMessageError,
    SlackIngestError,
    ValidationError,
)
from slack_ingest.domain.models import (
    IngestEvent,
    IngestEventStatus,
    Message,
    PIISourceType,
    ProcessingOutcome,
    ProcessingResult,
)
from slack_ingest.domain.protocols import PIIScannerProtocol, RepositoryProtocol
from slack_ingest.observability.metrics import INGEST_EVENTS_TOTAL
from slack_ingest.services.envelope import (
    format_username,
    parse_envelope,
    parse_slack_timestamp,
)

logger = get_logger(__name__)

AUDIT_STATUS_BY_OUTCOME: Final[dict[ProcessingOutcome, IngestEventStatus]] = {
    ProcessingOutcome.SUCCESS: IngestEventStatus.SUCCESS,
    ProcessingOutcome.DUPLICATE: IngestEventStatus.SUCCESS,
    ProcessingOutcome.SKIPPED: IngestEventStatus.SKIPPED,
    ProcessingOutcome.FAILED: IngestEventStatus.FAILED,
}


class EventProcessor:
    """Idempotent state machine applying Slack events to the message store."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        pii_scanner: PIIScannerProtocol | None = None,
    ) -> None:
        self._repository = repository
        self._pii_scanner = pii_scanner

    async def process(
        self,
        payload: dict[str, Any],
        *,
        skip_side_effects: bool = False,
        audit_event: IngestEvent | None = None,
    ) -> ProcessingResult:
        """Parse a raw webhook payload and process it.

        Args:
            payload: Raw Events API payload (or a history item wrapped as one)
            skip_side_effects: Suppress PII scanning (bulk backfill)
            audit_event: Existing audit row to reuse when replaying a failed event

        Returns:
            Processing result; never raises
        """
        try:
            envelope = parse_envelope(payload)
        except ValidationError as exc:
            logger.warning(
                "event_payload_invalid",
                error=str(exc),
                ingest_event_id=audit_event.id if audit_event else None,
            )
            if audit_event is not None:
                await self._finalize_audit(
                    audit_event.id, IngestEventStatus.FAILED, error=str(exc)
                )
            INGEST_EVENTS_TOTAL.labels(outcome=ProcessingOutcome.FAILED.value).inc()
            return ProcessingResult(
                outcome=ProcessingOutcome.FAILED,
                error=str(exc),
                ingest_event_id=audit_event.id if audit_event else None,
            )

        return await self.process_envelope(
            envelope,
            payload,
            skip_side_effects=skip_side_effects,
            audit_event=audit_event,
        )

    async def process_envelope(
        self,
        envelope: EventEnvelope,
        payload: dict[str, Any],
        *,
        skip_side_effects: bool = False,
        audit_event: IngestEvent | None = None,
    ) -> ProcessingResult:
        """Process an already parsed envelope; ``payload`` is stored verbatim."""
        try:
            audit_id = await self._open_audit(envelope, payload, audit_event)
        except SlackIngestError as exc:
            logger.error(
                "audit_write_failed",
                event_id=envelope.event_id,
                error=str(exc),
            )
            INGEST_EVENTS_TOTAL.labels(outcome=ProcessingOutcome.FAILED.value).inc()
            return ProcessingResult(
                outcome=ProcessingOutcome.FAILED,
                error=f"Audit log unavailable: {exc}",
            )

        try:
            result = await self._dispatch(envelope, skip_side_effects)
        except SlackIngestError as exc:
            logger.warning(
                "event_processing_failed",
                event_id=envelope.event_id,
                event_type=type(envelope).__name__,
                error=str(exc),
            )
            result = ProcessingResult(outcome=ProcessingOutcome.FAILED, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "event_processing_crashed",
                event_id=envelope.event_id,
                event_type=type(envelope).__name__,
            )
            result = ProcessingResult(
                outcome=ProcessingOutcome.FAILED,
                error=f"{type(exc).__name__}: {exc}",
            )

        await self._finalize_audit(
            audit_id,
            AUDIT_STATUS_BY_OUTCOME[result.outcome],
            error=result.error,
            resulting_message_id=result.data.get("message_id"),
        )
        INGEST_EVENTS_TOTAL.labels(outcome=result.outcome.value).inc()
        logger.debug(
            "event_processed",
            event_id=envelope.event_id,
            ingest_event_id=audit_id,
            outcome=result.outcome.value,
        )
        return result.model_copy(update={"ingest_event_id": audit_id})

    async def _open_audit(
        self,
        envelope: EventEnvelope,
        payload: dict[str, Any],
        audit_event: IngestEvent | None,
    ) -> str:
        if audit_event is not None:
            return audit_event.id

        record = IngestEvent(
            external_event_id=envelope.event_id,
            event_type=envelope.event_type,
            event_subtype=envelope.event_subtype,
            raw_payload=payload,
            channel_id=envelope.channel_id,
            status=IngestEventStatus.PROCESSING,
            attempts=1,
            last_attempt_at=datetime.now(UTC),
        )
        await asyncio.to_thread(self._repository.create_ingest_event, record)
        return record.id

    async def _finalize_audit(
        self,
        audit_id: str,
        status: IngestEventStatus,
        *,
        error: str | None = None,
        resulting_message_id: str | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._repository.update_ingest_event,
                audit_id,
                status=status,
                error_message=error,
                resulting_message_id=resulting_message_id,
            )
        except SlackIngestError as exc:
            logger.error(
                "audit_finalize_failed",
                ingest_event_id=audit_id,
                status=status.value,
                error=str(exc),
            )

    async def _dispatch(
        self, envelope: EventEnvelope, skip_side_effects: bool
    ) -> ProcessingResult:
        if isinstance(envelope, VerificationEnvelope):
            return ProcessingResult(
                outcome=ProcessingOutcome.SUCCESS,
                message="URL verification",
                data={"challenge": envelope.challenge},
            )
        if isinstance(envelope, MessageDeletedEvent):
            return await self._handle_deleted(envelope)
        if isinstance(envelope, MessageEditedEvent):
            return await self._handle_edited(envelope, skip_side_effects)
        if isinstance(envelope, MessageCreatedEvent):
            return await self._handle_created(envelope, skip_side_effects)
        if isinstance(envelope, UnknownEvent):
            return ProcessingResult(
                outcome=ProcessingOutcome.SKIPPED,
                message=f"Ignored event: {envelope.reason}",
            )
        raise ValidationError(f"Unhandled envelope type: {type(envelope).__name__}")

    async def _handle_created(
        self, event: MessageCreatedEvent, skip_side_effects: bool
    ) -> ProcessingResult:
        existing = await asyncio.to_thread(
            self._repository.get_message, event.external_id, event.channel_id
        )
        if existing is not None:
            return self._duplicate_result(existing.id)

        parent_message_id: str | None = None
        thread_root: str | None = None
        if event.is_thread_reply and event.thread_ts:
            thread_root = event.thread_ts
            root = await asyncio.to_thread(
                self._repository.get_message, event.thread_ts, event.channel_id
            )
            if root is not None:
                parent_message_id = root.id
            else:
                logger.debug(
                    "thread_root_not_stored",
                    channel_id=event.channel_id,
                    thread_ts=event.thread_ts,
                )

        message = Message(
            external_id=event.external_id,
            channel_id=event.channel_id,
            text=event.text,
            author_id=event.author_id,
            author_display=format_username(event.author_id),
            timestamp=parse_slack_timestamp(event.external_id),
            thread_root_external_id=thread_root,
            is_thread_reply=event.is_thread_reply,
            parent_message_id=parent_message_id,
        )

        try:
            await asyncio.to_thread(self._repository.insert_message, message)
        except DuplicateMessageError:
            # Lost an insert race against a concurrent delivery.
            winner = await asyncio.to_thread(
                self._repository.get_message, event.external_id, event.channel_id
            )
            return self._duplicate_result(winner.id if winner else None)

        if not skip_side_effects:
            await self._scan_pii(message.id, message.text)

        return ProcessingResult(
            outcome=ProcessingOutcome.SUCCESS,
            message="Message stored",
            data={
                "message_id": message.id,
                "is_thread_reply": message.is_thread_reply,
                "parent_message_id": parent_message_id,
            },
        )

    async def _handle_edited(
        self, event: MessageEditedEvent, skip_side_effects: bool
    ) -> ProcessingResult:
        updated = await asyncio.to_thread(
            self._repository.update_message_text,
            event.external_id,
            event.channel_id,
            event.new_text,
        )
        if updated == 0:
            return ProcessingResult(
                outcome=ProcessingOutcome.SKIPPED,
                message="Edited message not found",
            )

        rows = await asyncio.to_thread(
            self._repository.find_messages, event.external_id, event.channel_id
        )
        if not skip_side_effects:
            for row in rows:
                await self._scan_pii(row.id, event.new_text)

        return ProcessingResult(
            outcome=ProcessingOutcome.SUCCESS,
            message="Message updated",
            data={
                "message_id": rows[0].id if rows else None,
                "updated_count": updated,
            },
        )

    async def _handle_deleted(self, event: MessageDeletedEvent) -> ProcessingResult:
        roots = await asyncio.to_thread(
            self._repository.find_messages, event.external_id, event.channel_id
        )
        if not roots:
            return ProcessingResult(
                outcome=ProcessingOutcome.SKIPPED,
                message="Deleted message not found",
            )

        replies = await asyncio.to_thread(
            self._repository.find_thread_replies, event.external_id, event.channel_id
        )
        root_ids = [row.id for row in roots]
        reply_ids = [row.id for row in replies if row.id not in root_ids]
        deleted = await asyncio.to_thread(
            self._repository.delete_messages, root_ids + reply_ids
        )

        logger.info(
            "message_deleted",
            channel_id=event.channel_id,
            external_id=event.external_id,
            deleted_count=deleted,
            thread_replies_deleted=len(reply_ids),
        )
        return ProcessingResult(
            outcome=ProcessingOutcome.SUCCESS,
            message="Message deleted",
            data={
                "deleted_count": deleted,
                "root_messages_deleted": len(root_ids),
                "thread_replies_deleted": len(reply_ids),
            },
        )

    async def _scan_pii(self, message_id: str, text: str) -> None:
        if self._pii_scanner is None:
            return
        try:
            findings = await self._pii_scanner.scan(
                text, PIISourceType.MESSAGE, message_id
            )
            await asyncio.to_thread(
                self._repository.save_pii_detections, message_id, findings
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "pii_scan_failed",
                message_id=message_id,
                error=str(exc),
            )

    @staticmethod
    def _duplicate_result(message_id: str | None) -> ProcessingResult:
        return ProcessingResult(
            outcome=ProcessingOutcome.DUPLICATE,
            message="Message already stored",
            data={"message_id": message_id},
        )


__all__ = ["EventProcessor"]
