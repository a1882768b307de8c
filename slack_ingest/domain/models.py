"""Domain models for Slack ingestion.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from slack_ingest.domain.backfill_constants import CHANNEL_ID_PATTERN


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IngestEventStatus(str, Enum):
    """Lifecycle of an audit record."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ProcessingOutcome(str, Enum):
    """Result reported by the event processor to its caller."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    DUPLICATE = "DUPLICATE"


class BackfillStatus(str, Enum):
    """Backfill operation status."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            BackfillStatus.COMPLETED,
            BackfillStatus.FAILED,
            BackfillStatus.CANCELLED,
        )


class PIISourceType(str, Enum):
    """Kind of record a PII detection refers to."""

    MESSAGE = "MESSAGE"
    DOCUMENT = "DOCUMENT"


class Message(BaseModel):
    """Stored Slack message."""

    id: str = Field(default_factory=_new_id, description="Internal id")
    external_id: str = Field(..., description="Slack ts of the message")
    channel_id: str = Field(..., description="Slack channel id")
    text: str = Field(default="")
    author_id: str = Field(..., description="Slack user id")
    author_display: str = Field(default="")
    timestamp: datetime
    thread_root_external_id: str | None = Field(
        default=None, description="thread_ts of the thread this message belongs to"
    )
    is_thread_reply: bool = Field(default=False)
    parent_message_id: str | None = Field(
        default=None, description="Internal id of the stored thread root"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class IngestEvent(BaseModel):
    """Audit record for one inbound event."""

    id: str = Field(default_factory=_new_id)
    external_event_id: str
    event_type: str
    event_subtype: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    channel_id: str | None = None
    status: IngestEventStatus = IngestEventStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    error_message: str | None = None
    resulting_message_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class PIIFinding(BaseModel):
    """Span reported by the PII scanner."""

    span_text: str
    start: int = Field(ge=0)
    end: int = Field(ge=0)
    pii_type: str = Field(default="CUSTOM")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class PIIDetection(BaseModel):
    """Stored PII detection derived from a message."""

    id: str = Field(default_factory=_new_id)
    source_type: PIISourceType = PIISourceType.MESSAGE
    source_id: str
    pii_type: str
    span_text: str
    span_start: int
    span_end: int
    confidence: float
    created_at: datetime = Field(default_factory=_utcnow)


class ProcessingResult(BaseModel):
    """Typed result of processing one event."""

    outcome: ProcessingOutcome
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    ingest_event_id: str | None = None


class ChannelInfo(BaseModel):
    """Slack conversation metadata."""

    id: str
    name: str
    is_private: bool = False
    is_member: bool = False
    member_count: int | None = None


class MessagePage(BaseModel):
    """One page of conversations.history."""

    messages: list[dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


class BackfillStats(BaseModel):
    """Counters accumulated by a backfill operation."""

    new_messages: int = 0
    duplicate_messages: int = 0
    failed_messages: int = 0
    thread_replies_fetched: int = 0


class BackfillConfig(BaseModel):
    """Validated parameters for a channel backfill.

    Page size and delay are clamped to configured bounds by
    ``validate_backfill_config`` before the model is built.
    """

    channel_id: str
    channel_name: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    include_threads: bool = True
    page_size: int = Field(ge=1)
    delay_seconds: float = Field(ge=0.0)
    skip_side_effects: bool = False
    requesting_principal: str | None = None
    max_concurrency: int = Field(default=1, ge=1)

    @field_validator("channel_id")
    @classmethod
    def _check_channel_id(cls, value: str) -> str:
        if not CHANNEL_ID_PATTERN.match(value):
            raise ValueError("Invalid channel ID format")
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def _ensure_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _check_window(self) -> "BackfillConfig":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be before end_date")
        return self


class BackfillOperation(BaseModel):
    """Progress snapshot of one backfill invocation."""

    id: str
    channel_id: str
    channel_name: str
    status: BackfillStatus = BackfillStatus.QUEUED
    progress_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    total_messages: int = 0
    processed_messages: int = 0
    threads_processed: int = 0
    stats: BackfillStats = Field(default_factory=BackfillStats)
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    requesting_principal: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (BackfillStatus.QUEUED, BackfillStatus.RUNNING)
