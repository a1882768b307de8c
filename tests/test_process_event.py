from __future__ import annotations

import asyncio
from typing import Any

from slack_ingest.domain.exceptions import RepositoryError
from slack_ingest.domain.models import (
    IngestEventStatus,
    Message,
    ProcessingOutcome,
    ProcessingResult,
)
from slack_ingest.domain.protocols import RepositoryProtocol
from slack_ingest.use_cases.process_event import EventProcessor
from tests.conftest import (
    CHANNEL_ID,
    FakePIIScanner,
    delete_payload,
    edit_payload,
    message_payload,
)


def _process(
    processor: EventProcessor, payload: dict[str, Any], **kwargs: Any
) -> ProcessingResult:
    return asyncio.run(processor.process(payload, **kwargs))


def test_creation_stores_message_and_audit_row(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    result = _process(processor, message_payload("1700000000.000100", "hi there"))

    assert result.outcome == ProcessingOutcome.SUCCESS
    stored = repo.get_message("1700000000.000100", CHANNEL_ID)
    assert stored is not None
    assert stored.text == "hi there"
    assert stored.author_display == "user_0123456"
    assert stored.is_thread_reply is False

    audit = repo.get_ingest_event(result.ingest_event_id or "")
    assert audit is not None
    assert audit.status == IngestEventStatus.SUCCESS
    assert audit.attempts == 1
    assert audit.resulting_message_id == stored.id
    assert audit.raw_payload["event"]["ts"] == "1700000000.000100"


def test_duplicate_delivery_is_idempotent(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    first = _process(processor, message_payload("1700000000.000100", "original"))
    second = _process(processor, message_payload("1700000000.000100", "changed"))

    assert first.outcome == ProcessingOutcome.SUCCESS
    assert second.outcome == ProcessingOutcome.DUPLICATE
    assert repo.count_messages(CHANNEL_ID) == 1

    stored = repo.get_message("1700000000.000100", CHANNEL_ID)
    assert stored is not None
    assert stored.text == "original"

    duplicate_audit = repo.get_ingest_event(second.ingest_event_id or "")
    assert duplicate_audit is not None
    assert duplicate_audit.status == IngestEventStatus.SUCCESS
    assert duplicate_audit.resulting_message_id == stored.id


def test_same_ts_in_other_channel_is_not_a_duplicate(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    _process(processor, message_payload("1700000000.000100"))
    result = _process(
        processor, message_payload("1700000000.000100", channel="C0OTHER01")
    )

    assert result.outcome == ProcessingOutcome.SUCCESS
    assert repo.count_messages() == 2


def test_thread_reply_links_to_stored_root(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    root_ts = "1700000000.000100"
    _process(processor, message_payload(root_ts, "root", thread_ts=root_ts))
    reply = _process(
        processor, message_payload("1700000001.000100", "reply", thread_ts=root_ts)
    )

    root = repo.get_message(root_ts, CHANNEL_ID)
    stored_reply = repo.get_message("1700000001.000100", CHANNEL_ID)
    assert root is not None and stored_reply is not None
    assert reply.outcome == ProcessingOutcome.SUCCESS
    assert root.is_thread_reply is False
    assert stored_reply.is_thread_reply is True
    assert stored_reply.thread_root_external_id == root_ts
    assert stored_reply.parent_message_id == root.id


def test_thread_reply_without_stored_root_has_no_parent(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    result = _process(
        processor,
        message_payload("1700000001.000100", "orphan", thread_ts="1700000000.000100"),
    )

    stored = repo.get_message("1700000001.000100", CHANNEL_ID)
    assert result.outcome == ProcessingOutcome.SUCCESS
    assert stored is not None
    assert stored.is_thread_reply is True
    assert stored.parent_message_id is None
    assert stored.thread_root_external_id == "1700000000.000100"


def test_deletion_removes_root_and_thread_replies(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    root_ts = "1700000000.000100"
    _process(processor, message_payload(root_ts, "root", thread_ts=root_ts))
    _process(processor, message_payload("1700000001.000100", "r1", thread_ts=root_ts))
    _process(processor, message_payload("1700000002.000100", "r2", thread_ts=root_ts))
    _process(processor, message_payload("1700000003.000100", "unrelated"))

    result = _process(processor, delete_payload(root_ts))

    assert result.outcome == ProcessingOutcome.SUCCESS
    assert result.data["deleted_count"] == 3
    assert result.data["root_messages_deleted"] == 1
    assert result.data["thread_replies_deleted"] == 2
    assert repo.get_message(root_ts, CHANNEL_ID) is None
    assert repo.find_thread_replies(root_ts, CHANNEL_ID) == []
    assert repo.count_messages(CHANNEL_ID) == 1


def test_deletion_of_unknown_message_is_skipped(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    result = _process(processor, delete_payload("1699999999.000100"))

    assert result.outcome == ProcessingOutcome.SKIPPED
    audit = repo.get_ingest_event(result.ingest_event_id or "")
    assert audit is not None
    assert audit.status == IngestEventStatus.SKIPPED


def test_edit_updates_text_in_place(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    _process(processor, message_payload("1700000000.000100", "before"))
    original = repo.get_message("1700000000.000100", CHANNEL_ID)

    result = _process(processor, edit_payload("1700000000.000100", "after"))

    edited = repo.get_message("1700000000.000100", CHANNEL_ID)
    assert result.outcome == ProcessingOutcome.SUCCESS
    assert original is not None and edited is not None
    assert edited.id == original.id
    assert edited.text == "after"
    assert edited.updated_at >= original.updated_at
    assert repo.count_messages(CHANNEL_ID) == 1


def test_edit_of_unknown_message_is_skipped(processor: EventProcessor) -> None:
    result = _process(processor, edit_payload("1700000000.000100", "after"))

    assert result.outcome == ProcessingOutcome.SKIPPED


def test_bot_messages_are_acknowledged_and_skipped(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    result = _process(
        processor, message_payload("1700000000.000100", "beep", bot_id="B0123")
    )

    assert result.outcome == ProcessingOutcome.SKIPPED
    assert repo.count_messages() == 0
    audit = repo.get_ingest_event(result.ingest_event_id or "")
    assert audit is not None
    assert audit.status == IngestEventStatus.SKIPPED


def test_url_verification_returns_challenge(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    result = _process(
        processor, {"type": "url_verification", "challenge": "abc123"}
    )

    assert result.outcome == ProcessingOutcome.SUCCESS
    assert result.data["challenge"] == "abc123"
    assert repo.count_ingest_events_by_status() == {IngestEventStatus.SUCCESS: 1}


def test_malformed_payload_fails_without_audit_row(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    result = _process(processor, {"event": {"type": "message"}})

    assert result.outcome == ProcessingOutcome.FAILED
    assert result.ingest_event_id is None
    assert repo.count_ingest_events_by_status() == {}


def test_pii_detections_follow_message_lifecycle(repo: RepositoryProtocol) -> None:
    scanner = FakePIIScanner("secret")
    processor = EventProcessor(repo, pii_scanner=scanner)

    _process(processor, message_payload("1700000000.000100", "my secret code"))
    stored = repo.get_message("1700000000.000100", CHANNEL_ID)
    assert stored is not None
    detections = repo.list_pii_detections(stored.id)
    assert [(d.span_start, d.span_end) for d in detections] == [(3, 9)]

    _process(processor, edit_payload("1700000000.000100", "no more secret here"))
    detections = repo.list_pii_detections(stored.id)
    assert [(d.span_start, d.span_end) for d in detections] == [(8, 14)]

    _process(processor, delete_payload("1700000000.000100"))
    assert repo.list_pii_detections(stored.id) == []


def test_skip_side_effects_suppresses_pii_scan(repo: RepositoryProtocol) -> None:
    scanner = FakePIIScanner("secret")
    processor = EventProcessor(repo, pii_scanner=scanner)

    result = _process(
        processor,
        message_payload("1700000000.000100", "secret"),
        skip_side_effects=True,
    )

    assert result.outcome == ProcessingOutcome.SUCCESS
    assert scanner.calls == []


def test_pii_scanner_failure_does_not_fail_event(repo: RepositoryProtocol) -> None:
    processor = EventProcessor(repo, pii_scanner=FakePIIScanner(fail=True))

    result = _process(processor, message_payload("1700000000.000100", "secret"))

    assert result.outcome == ProcessingOutcome.SUCCESS
    assert repo.count_messages() == 1


class _FailingInsertRepository:
    def __init__(self, inner: RepositoryProtocol) -> None:
        self._inner = inner

    def insert_message(self, message: Message) -> Message:
        raise RepositoryError("disk full")

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


def test_storage_failure_is_reported_not_raised(repo: RepositoryProtocol) -> None:
    processor = EventProcessor(_FailingInsertRepository(repo))  # type: ignore[arg-type]

    result = _process(processor, message_payload("1700000000.000100"))

    assert result.outcome == ProcessingOutcome.FAILED
    assert result.error is not None and "disk full" in result.error
    audit = repo.get_ingest_event(result.ingest_event_id or "")
    assert audit is not None
    assert audit.status == IngestEventStatus.FAILED
    assert audit.error_message is not None and "disk full" in audit.error_message


class _FailingAuditUpdateRepository:
    def __init__(self, inner: RepositoryProtocol) -> None:
        self._inner = inner

    def update_ingest_event(self, event_id: str, **changes: Any) -> None:
        raise RepositoryError("audit table locked")

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


def test_audit_row_is_opened_as_processing_in_one_write(
    repo: RepositoryProtocol,
) -> None:
    processor = EventProcessor(_FailingAuditUpdateRepository(repo))  # type: ignore[arg-type]

    result = _process(processor, message_payload("1700000000.000100"))

    assert result.outcome == ProcessingOutcome.SUCCESS
    assert result.ingest_event_id is not None
    audit = repo.get_ingest_event(result.ingest_event_id)
    assert audit is not None
    assert audit.status == IngestEventStatus.PROCESSING
    assert audit.attempts == 1
    assert audit.last_attempt_at is not None


def test_concurrent_duplicate_deliveries_store_one_row(
    repo: RepositoryProtocol, processor: EventProcessor
) -> None:
    async def _deliver_many() -> list[ProcessingResult]:
        payload = message_payload("1700000000.000100", "race")
        return await asyncio.gather(*(processor.process(payload) for _ in range(5)))

    results = asyncio.run(_deliver_many())

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes.count(ProcessingOutcome.SUCCESS.value) == 1
    assert outcomes.count(ProcessingOutcome.DUPLICATE.value) == 4
    assert repo.count_messages() == 1
