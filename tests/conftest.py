"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from slack_ingest.adapters.progress_store import InMemoryProgressStore
from slack_ingest.adapters.repository_factory import create_repository
from slack_ingest.config.settings import Settings
from slack_ingest.domain.exceptions import SlackAPIError
from slack_ingest.domain.models import (
    BackfillOperation,
    ChannelInfo,
    MessagePage,
    PIIFinding,
    PIISourceType,
)
from slack_ingest.domain.protocols import RepositoryProtocol
from slack_ingest.use_cases.process_event import EventProcessor

CHANNEL_ID = "C0123ABCD"


@pytest.fixture
def settings(
    tmp_path_factory: pytest.TempPathFactory, request: pytest.FixtureRequest
) -> Settings:
    """Create settings configured for the requested database backend."""

    base_settings = Settings()

    backend = "sqlite"
    if hasattr(request.node, "callspec"):
        backend = request.node.callspec.params.get("repo", backend)

    if request.node.get_closest_marker("postgres"):
        backend = "postgres"

    if backend == "postgres":
        if os.environ.get("TEST_POSTGRES", "0") != "1":
            pytest.skip("PostgreSQL tests disabled (TEST_POSTGRES!=1)")
        if not os.environ.get("POSTGRES_PASSWORD"):
            pytest.skip("POSTGRES_PASSWORD not set for PostgreSQL tests")
        return base_settings.model_copy(update={"database_type": "postgres"})

    temp_dir = tmp_path_factory.mktemp("db")
    db_path = temp_dir / "test.sqlite"
    return base_settings.model_copy(
        update={"database_type": "sqlite", "db_path": str(db_path)}
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[RepositoryProtocol, None, None]:
    """Provide a repository instance for the configured backend."""

    repository = create_repository(settings)
    if settings.database_type == "postgres":
        _truncate_postgres(repository)

    try:
        yield repository
    finally:
        repository.close()

        if settings.database_type == "sqlite":
            db_path = Path(settings.db_path)
            if db_path.exists():
                try:
                    db_path.unlink()
                except OSError:
                    pass


def _truncate_postgres(repository: Any) -> None:
    with repository._cursor() as cur:
        cur.execute("TRUNCATE messages, ingest_events, pii_detections")


@pytest.fixture
def processor(repo: RepositoryProtocol) -> EventProcessor:
    return EventProcessor(repo)


@pytest.fixture
def progress_store() -> InMemoryProgressStore:
    return InMemoryProgressStore()


# Payload builders -----------------------------------------------------


def message_payload(
    ts: str,
    text: str = "hello",
    *,
    user: str = "U0123456789",
    channel: str = CHANNEL_ID,
    thread_ts: str | None = None,
    event_id: str | None = None,
    subtype: str | None = None,
    bot_id: str | None = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": "message",
        "user": user,
        "text": text,
        "ts": ts,
        "channel": channel,
    }
    if thread_ts is not None:
        event["thread_ts"] = thread_ts
    if subtype is not None:
        event["subtype"] = subtype
    if bot_id is not None:
        event["bot_id"] = bot_id
    return {
        "type": "event_callback",
        "event_id": event_id or f"Ev{ts.replace('.', '')}",
        "event": event,
    }


def edit_payload(
    ts: str, new_text: str, *, channel: str = CHANNEL_ID, previous: str = "hello"
) -> dict[str, Any]:
    return {
        "type": "event_callback",
        "event_id": f"EvEdit{ts.replace('.', '')}",
        "event": {
            "type": "message",
            "subtype": "message_changed",
            "channel": channel,
            "message": {"type": "message", "ts": ts, "text": new_text},
            "previous_message": {"type": "message", "ts": ts, "text": previous},
        },
    }


def delete_payload(ts: str, *, channel: str = CHANNEL_ID) -> dict[str, Any]:
    return {
        "type": "event_callback",
        "event_id": f"EvDel{ts.replace('.', '')}",
        "event": {
            "type": "message",
            "subtype": "message_deleted",
            "channel": channel,
            "deleted_ts": ts,
        },
    }


def history_message(
    index: int,
    *,
    reply_count: int = 0,
    user: str = "U0123456789",
) -> dict[str, Any]:
    ts = f"{1700000000 + index}.000100"
    message: dict[str, Any] = {
        "type": "message",
        "user": user,
        "text": f"message {index}",
        "ts": ts,
    }
    if reply_count:
        message["thread_ts"] = ts
        message["reply_count"] = reply_count
    return message


# Fakes ----------------------------------------------------------------


class FakeSlackClient:
    """In-memory Slack client paginating with ``cursor-N`` cursors."""

    def __init__(
        self,
        messages: list[dict[str, Any]] | None = None,
        *,
        channel: ChannelInfo | None = None,
        replies: dict[str, list[dict[str, Any]]] | None = None,
        failing_threads: set[str] | None = None,
        channels: list[ChannelInfo] | None = None,
    ) -> None:
        self.messages = messages or []
        self.channel = channel or ChannelInfo(
            id=CHANNEL_ID, name="general", is_private=False, is_member=True
        )
        self.replies = replies or {}
        self.failing_threads = failing_threads or set()
        self.channels = channels or [self.channel]
        self.history_calls: list[dict[str, Any]] = []
        self.replies_calls: list[str] = []
        self.metadata_calls = 0
        self.on_page: Any = None

    async def list_messages(
        self,
        channel_id: str,
        *,
        cursor: str | None = None,
        limit: int = 100,
        oldest: Any = None,
        latest: Any = None,
        cancel_check: Any = None,
    ) -> MessagePage:
        self.history_calls.append(
            {"channel_id": channel_id, "cursor": cursor, "limit": limit}
        )
        start = int(cursor.split("-")[1]) if cursor else 0
        chunk = self.messages[start : start + limit]
        end = start + len(chunk)
        has_more = end < len(self.messages)
        if self.on_page is not None:
            self.on_page(len(self.history_calls))
        return MessagePage(
            messages=chunk,
            has_more=has_more,
            next_cursor=f"cursor-{end}" if has_more else None,
        )

    async def list_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        limit: int = 1000,
        cancel_check: Any = None,
    ) -> list[dict[str, Any]]:
        self.replies_calls.append(thread_ts)
        if thread_ts in self.failing_threads:
            raise SlackAPIError(f"conversations_replies failed for {thread_ts}")
        return list(self.replies.get(thread_ts, []))[:limit]

    async def get_channel_metadata(
        self, channel_id: str, *, cancel_check: Any = None
    ) -> ChannelInfo:
        self.metadata_calls += 1
        return self.channel

    async def list_channels(self) -> list[ChannelInfo]:
        return [channel for channel in self.channels if channel.is_member]

    async def list_all_channels(self) -> list[ChannelInfo]:
        return [
            channel
            for channel in self.channels
            if not (channel.is_private and not channel.is_member)
        ]


class RecordingProgressStore(InMemoryProgressStore):
    """Progress store remembering every snapshot written."""

    def __init__(self) -> None:
        super().__init__()
        self.history: list[BackfillOperation] = []

    def set(self, operation: BackfillOperation) -> None:
        self.history.append(operation.model_copy(deep=True))
        super().set(operation)


class FakePIIScanner:
    """Flags every occurrence of the configured needle."""

    def __init__(self, needle: str = "secret", *, fail: bool = False) -> None:
        self.needle = needle
        self.fail = fail
        self.calls: list[tuple[str, PIISourceType, str]] = []

    async def scan(
        self, text: str, source_type: PIISourceType, source_id: str
    ) -> list[PIIFinding]:
        self.calls.append((text, source_type, source_id))
        if self.fail:
            raise RuntimeError("scanner unavailable")
        start = text.find(self.needle)
        if start < 0:
            return []
        return [
            PIIFinding(
                span_text=self.needle,
                start=start,
                end=start + len(self.needle),
                pii_type="CUSTOM",
                confidence=0.9,
            )
        ]


async def no_sleep(_: float) -> None:
    return None
