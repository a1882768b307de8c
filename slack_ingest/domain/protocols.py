"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from slack_ingest.domain.models import (
    BackfillOperation,
    ChannelInfo,
    IngestEvent,
    IngestEventStatus,
    Message,
    MessagePage,
    PIIDetection,
    PIIFinding,
    PIISourceType,
)


class MessageStoreProtocol(Protocol):
    """Durable, deduplicated message records with thread linkage."""

    def get_message(self, external_id: str, channel_id: str) -> Message | None:
        """Return the message stored for (external_id, channel_id), if any."""
        ...

    def find_messages(self, external_id: str, channel_id: str) -> list[Message]:
        """Return all rows matching (external_id, channel_id)."""
        ...

    def find_thread_replies(
        self, thread_root_external_id: str, channel_id: str
    ) -> list[Message]:
        """Return stored replies anchored on the given thread root."""
        ...

    def insert_message(self, message: Message) -> Message:
        """Insert a new message.

        Raises:
            DuplicateMessageError: If (external_id, channel_id) already exists
            RepositoryError: On storage errors
        """
        ...

    def update_message_text(self, external_id: str, channel_id: str, text: str) -> int:
        """Update text and updated_at; return the number of rows changed."""
        ...

    def delete_messages(self, message_ids: list[str]) -> int:
        """Delete messages and their derived PII rows; return messages removed."""
        ...

    def count_messages(self, channel_id: str | None = None) -> int:
        """Count stored messages, optionally for one channel."""
        ...

    def save_pii_detections(
        self, source_id: str, findings: list[PIIFinding]
    ) -> list[PIIDetection]:
        """Replace the PII detections stored for a message."""
        ...

    def list_pii_detections(self, source_id: str) -> list[PIIDetection]:
        """Return PII detections stored for a message."""
        ...


class AuditLogProtocol(Protocol):
    """Durable record of every inbound event and its processing outcome."""

    def create_ingest_event(self, event: IngestEvent) -> IngestEvent:
        """Persist a new audit record."""
        ...

    def update_ingest_event(self, event_id: str, **changes: Any) -> None:
        """Update fields of an audit record (status, attempts, error_message, ...)."""
        ...

    def get_ingest_event(self, event_id: str) -> IngestEvent | None:
        """Load an audit record by id."""
        ...

    def list_failed_ingest_events(
        self, max_attempts: int, limit: int
    ) -> list[IngestEvent]:
        """FAILED records with attempts < max_attempts, oldest first."""
        ...

    def count_ingest_events_by_status(self) -> dict[IngestEventStatus, int]:
        """Return audit record counts grouped by status."""
        ...


class RepositoryProtocol(MessageStoreProtocol, AuditLogProtocol, Protocol):
    """Storage backend implementing both the message store and the audit log."""

    def close(self) -> None:
        """Release backend resources."""
        ...


class SlackClientProtocol(Protocol):
    """Slack Web API calls consumed by the backfill orchestrator."""

    async def list_messages(
        self,
        channel_id: str,
        *,
        cursor: str | None = None,
        limit: int = 100,
        oldest: datetime | None = None,
        latest: datetime | None = None,
        cancel_check: Callable[[], None] | None = None,
    ) -> MessagePage:
        """Fetch one page of channel history (cursor continuation).

        ``cancel_check`` is called around rate-limit sleeps and raises to abort.
        """
        ...

    async def list_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        limit: int = 1000,
        cancel_check: Callable[[], None] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch replies of a thread, root message excluded."""
        ...

    async def get_channel_metadata(
        self, channel_id: str, *, cancel_check: Callable[[], None] | None = None
    ) -> ChannelInfo:
        """Fetch conversation metadata."""
        ...

    async def list_channels(self) -> list[ChannelInfo]:
        """Channels the credential can read."""
        ...

    async def list_all_channels(self) -> list[ChannelInfo]:
        """Visible channels with membership flag; private non-member ones excluded."""
        ...


class PIIScannerProtocol(Protocol):
    """External PII scanner (best effort)."""

    async def scan(
        self, text: str, source_type: PIISourceType, source_id: str
    ) -> list[PIIFinding]:
        """Return PII spans found in text."""
        ...


class ProgressStoreProtocol(Protocol):
    """Keyed store of backfill operation snapshots."""

    def get(self, operation_id: str) -> BackfillOperation | None:
        """Return a copy of the snapshot or None."""
        ...

    def set(self, operation: BackfillOperation) -> None:
        """Store a copy of the snapshot."""
        ...

    def delete(self, operation_id: str) -> bool:
        """Remove a snapshot; return True if it existed."""
        ...

    def list(self) -> list[BackfillOperation]:
        """Return copies of all snapshots."""
        ...

    def sweep(self, max_age_seconds: float, now: datetime | None = None) -> int:
        """Drop snapshots older than max_age_seconds; return the number removed."""
        ...
