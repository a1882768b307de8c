"""Repository contract tests.

SQLite always runs. PostgreSQL runs only when TEST_POSTGRES=1 and
POSTGRES_PASSWORD are set and the schema was migrated with ``alembic upgrade head``.

Run with: TEST_POSTGRES=1 POSTGRES_PASSWORD=password pytest tests/test_repository.py
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from slack_ingest.domain.exceptions import DuplicateMessageError, RepositoryError
from slack_ingest.domain.models import (
    IngestEvent,
    IngestEventStatus,
    Message,
    PIIFinding,
)
from slack_ingest.domain.protocols import RepositoryProtocol
from tests.conftest import CHANNEL_ID

BACKENDS = pytest.mark.parametrize("repo", ["sqlite", "postgres"], indirect=True)


def _message(external_id: str, **overrides: object) -> Message:
    data: dict[str, object] = {
        "external_id": external_id,
        "channel_id": CHANNEL_ID,
        "text": f"text {external_id}",
        "author_id": "U0123456789",
        "author_display": "user_0123456",
        "timestamp": datetime(2024, 1, 1, tzinfo=UTC),
    }
    data.update(overrides)
    return Message(**data)  # type: ignore[arg-type]


@BACKENDS
def test_insert_and_get_message(repo: RepositoryProtocol) -> None:
    message = repo.insert_message(_message("100.000"))

    stored = repo.get_message("100.000", CHANNEL_ID)

    assert stored is not None
    assert stored.id == message.id
    assert stored.text == "text 100.000"
    assert stored.timestamp == datetime(2024, 1, 1, tzinfo=UTC)
    assert repo.get_message("100.000", "C0OTHER01") is None


@BACKENDS
def test_duplicate_insert_raises(repo: RepositoryProtocol) -> None:
    repo.insert_message(_message("100.000"))

    with pytest.raises(DuplicateMessageError):
        repo.insert_message(_message("100.000", text="other"))

    assert repo.count_messages(CHANNEL_ID) == 1


@BACKENDS
def test_thread_replies_exclude_root(repo: RepositoryProtocol) -> None:
    root = repo.insert_message(_message("100.000", thread_root_external_id="100.000"))
    repo.insert_message(
        _message(
            "101.000",
            thread_root_external_id="100.000",
            is_thread_reply=True,
            parent_message_id=root.id,
        )
    )
    repo.insert_message(
        _message(
            "101.000",
            channel_id="C0OTHER01",
            thread_root_external_id="100.000",
            is_thread_reply=True,
        )
    )

    replies = repo.find_thread_replies("100.000", CHANNEL_ID)

    assert [reply.external_id for reply in replies] == ["101.000"]
    assert replies[0].parent_message_id == root.id


@BACKENDS
def test_update_text_touches_updated_at(repo: RepositoryProtocol) -> None:
    original = repo.insert_message(_message("100.000"))

    changed = repo.update_message_text("100.000", CHANNEL_ID, "edited")

    stored = repo.get_message("100.000", CHANNEL_ID)
    assert changed == 1
    assert stored is not None
    assert stored.text == "edited"
    assert stored.updated_at >= original.updated_at
    assert repo.update_message_text("999.000", CHANNEL_ID, "x") == 0


@BACKENDS
def test_pii_detections_replaced_and_cascaded(repo: RepositoryProtocol) -> None:
    message = repo.insert_message(_message("100.000"))

    repo.save_pii_detections(
        message.id, [PIIFinding(span_text="a", start=0, end=1, confidence=0.5)]
    )
    repo.save_pii_detections(
        message.id,
        [
            PIIFinding(span_text="b", start=2, end=3),
            PIIFinding(span_text="c", start=4, end=5),
        ],
    )
    assert sorted(d.span_text for d in repo.list_pii_detections(message.id)) == [
        "b",
        "c",
    ]

    assert repo.delete_messages([message.id]) == 1
    assert repo.list_pii_detections(message.id) == []
    assert repo.delete_messages([]) == 0


@BACKENDS
def test_ingest_event_lifecycle(repo: RepositoryProtocol) -> None:
    event = repo.create_ingest_event(
        IngestEvent(
            external_event_id="Ev01",
            event_type="message",
            raw_payload={"type": "event_callback", "event": {"ts": "1.0"}},
            channel_id=CHANNEL_ID,
        )
    )

    repo.update_ingest_event(
        event.id, status=IngestEventStatus.FAILED, attempts=1, error_message="boom"
    )

    stored = repo.get_ingest_event(event.id)
    assert stored is not None
    assert stored.status == IngestEventStatus.FAILED
    assert stored.attempts == 1
    assert stored.error_message == "boom"
    assert stored.raw_payload == {"type": "event_callback", "event": {"ts": "1.0"}}
    assert repo.count_ingest_events_by_status() == {IngestEventStatus.FAILED: 1}


@BACKENDS
def test_update_rejects_unknown_columns(repo: RepositoryProtocol) -> None:
    event = repo.create_ingest_event(
        IngestEvent(external_event_id="Ev01", event_type="message")
    )

    with pytest.raises(RepositoryError):
        repo.update_ingest_event(event.id, raw_payload={})


@BACKENDS
def test_failed_events_filtered_and_ordered(repo: RepositoryProtocol) -> None:
    now = datetime.now(UTC)
    ids = []
    for offset, attempts in ((30, 1), (90, 1), (60, 3), (10, 2)):
        created = now - timedelta(seconds=offset)
        event = repo.create_ingest_event(
            IngestEvent(
                external_event_id=f"Ev{offset}",
                event_type="message",
                status=IngestEventStatus.FAILED,
                attempts=attempts,
                created_at=created,
                updated_at=created,
            )
        )
        ids.append(event.id)
    repo.create_ingest_event(
        IngestEvent(
            external_event_id="EvOk", event_type="message", status=IngestEventStatus.SUCCESS
        )
    )

    eligible = repo.list_failed_ingest_events(max_attempts=3, limit=10)

    assert [event.id for event in eligible] == [ids[1], ids[0], ids[3]]
    assert len(repo.list_failed_ingest_events(max_attempts=3, limit=1)) == 1
