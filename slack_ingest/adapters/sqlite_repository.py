"""SQLite repository adapter for local storage.

Implements RepositoryProtocol (message store + audit log) with SQLite backend.
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.exceptions import DuplicateMessageError, RepositoryError
from slack_ingest.domain.models import (
    IngestEvent,
    IngestEventStatus,
    Message,
    PIIDetection,
    PIIFinding,
    PIISourceType,
)

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

INGEST_EVENT_UPDATABLE_COLUMNS: Final[frozenset[str]] = frozenset(
    {
        "status",
        "attempts",
        "last_attempt_at",
        "error_message",
        "resulting_message_id",
        "channel_id",
        "event_subtype",
    }
)


def _to_db_value(value: Any) -> Any:
    if isinstance(value, IngestEventStatus | PIISourceType):
        return value.value
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SQLiteRepository:
    """SQLite-based repository for messages, audit events and PII detections."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        # Ensure data directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection.

        Returns:
            SQLite connection
        """
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RepositoryError(f"SQLite operation failed: {exc}") from exc
        finally:
            conn.close()

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    external_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    text TEXT NOT NULL DEFAULT '',
                    author_id TEXT NOT NULL,
                    author_display TEXT,
                    timestamp TEXT NOT NULL,
                    thread_root_external_id TEXT,
                    is_thread_reply INTEGER NOT NULL DEFAULT 0,
                    parent_message_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (external_id, channel_id)
                );

                CREATE INDEX IF NOT EXISTS idx_messages_thread_root
                    ON messages (channel_id, thread_root_external_id);

                CREATE TABLE IF NOT EXISTS ingest_events (
                    id TEXT PRIMARY KEY,
                    external_event_id TEXT,
                    event_type TEXT NOT NULL,
                    event_subtype TEXT,
                    raw_payload TEXT NOT NULL,
                    channel_id TEXT,
                    status TEXT NOT NULL CHECK (status IN
                        ('PENDING', 'PROCESSING', 'SUCCESS', 'FAILED', 'SKIPPED')),
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT,
                    error_message TEXT,
                    resulting_message_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_ingest_events_status
                    ON ingest_events (status, created_at);
                CREATE INDEX IF NOT EXISTS idx_ingest_events_external_id
                    ON ingest_events (external_event_id);

                CREATE TABLE IF NOT EXISTS pii_detections (
                    id TEXT PRIMARY KEY,
                    source_type TEXT NOT NULL DEFAULT 'MESSAGE',
                    source_id TEXT NOT NULL,
                    pii_type TEXT NOT NULL,
                    span_text TEXT NOT NULL,
                    span_start INTEGER NOT NULL,
                    span_end INTEGER NOT NULL,
                    confidence REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_pii_detections_source
                    ON pii_detections (source_type, source_id);
                """
            )
        logger.info("sqlite_schema_creation_completed", db_path=str(self.db_path))

    def close(self) -> None:
        """Connections are opened per operation; nothing to release."""

    # Messages ---------------------------------------------------------

    def get_message(self, external_id: str, channel_id: str) -> Message | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE external_id = ? AND channel_id = ?",
                (external_id, channel_id),
            ).fetchone()
        return self._row_to_message(row) if row else None

    def find_messages(self, external_id: str, channel_id: str) -> list[Message]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE external_id = ? AND channel_id = ?",
                (external_id, channel_id),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def find_thread_replies(
        self, thread_root_external_id: str, channel_id: str
    ) -> list[Message]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE thread_root_external_id = ? AND channel_id = ?
                  AND external_id != ?
                ORDER BY timestamp
                """,
                (thread_root_external_id, channel_id, thread_root_external_id),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def insert_message(self, message: Message) -> Message:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO messages (
                    id, external_id, channel_id, text, author_id, author_display,
                    timestamp, thread_root_external_id, is_thread_reply,
                    parent_message_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.external_id,
                    message.channel_id,
                    message.text,
                    message.author_id,
                    message.author_display,
                    _to_db_value(message.timestamp),
                    message.thread_root_external_id,
                    int(message.is_thread_reply),
                    message.parent_message_id,
                    _to_db_value(message.created_at),
                    _to_db_value(message.updated_at),
                ),
            )
            inserted = cursor.rowcount

        if inserted == 0:
            raise DuplicateMessageError(message.external_id, message.channel_id)
        return message

    def update_message_text(self, external_id: str, channel_id: str, text: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE messages SET text = ?, updated_at = ?
                WHERE external_id = ? AND channel_id = ?
                """,
                (text, _to_db_value(datetime.now(UTC)), external_id, channel_id),
            )
            return cursor.rowcount

    def delete_messages(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0

        placeholders = ", ".join("?" for _ in message_ids)
        with self._transaction() as conn:
            conn.execute(
                f"DELETE FROM pii_detections WHERE source_type = ? "
                f"AND source_id IN ({placeholders})",
                (PIISourceType.MESSAGE.value, *message_ids),
            )
            cursor = conn.execute(
                f"DELETE FROM messages WHERE id IN ({placeholders})",
                tuple(message_ids),
            )
            return cursor.rowcount

    def count_messages(self, channel_id: str | None = None) -> int:
        with self._transaction() as conn:
            if channel_id is None:
                row = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE channel_id = ?",
                    (channel_id,),
                ).fetchone()
        return int(row[0])

    # PII detections ---------------------------------------------------

    def save_pii_detections(
        self, source_id: str, findings: list[PIIFinding]
    ) -> list[PIIDetection]:
        detections = [
            PIIDetection(
                source_type=PIISourceType.MESSAGE,
                source_id=source_id,
                pii_type=finding.pii_type,
                span_text=finding.span_text,
                span_start=finding.start,
                span_end=finding.end,
                confidence=finding.confidence,
            )
            for finding in findings
        ]
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM pii_detections WHERE source_type = ? AND source_id = ?",
                (PIISourceType.MESSAGE.value, source_id),
            )
            conn.executemany(
                """
                INSERT INTO pii_detections (
                    id, source_type, source_id, pii_type, span_text,
                    span_start, span_end, confidence, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        detection.id,
                        detection.source_type.value,
                        detection.source_id,
                        detection.pii_type,
                        detection.span_text,
                        detection.span_start,
                        detection.span_end,
                        detection.confidence,
                        _to_db_value(detection.created_at),
                    )
                    for detection in detections
                ],
            )
        return detections

    def list_pii_detections(self, source_id: str) -> list[PIIDetection]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pii_detections
                WHERE source_type = ? AND source_id = ?
                ORDER BY span_start
                """,
                (PIISourceType.MESSAGE.value, source_id),
            ).fetchall()
        return [
            PIIDetection(
                id=row["id"],
                source_type=PIISourceType(row["source_type"]),
                source_id=row["source_id"],
                pii_type=row["pii_type"],
                span_text=row["span_text"],
                span_start=row["span_start"],
                span_end=row["span_end"],
                confidence=row["confidence"],
                created_at=_parse_dt(row["created_at"]),
            )
            for row in rows
        ]

    # Audit log --------------------------------------------------------

    def create_ingest_event(self, event: IngestEvent) -> IngestEvent:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO ingest_events (
                    id, external_event_id, event_type, event_subtype, raw_payload,
                    channel_id, status, attempts, last_attempt_at, error_message,
                    resulting_message_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.external_event_id,
                    event.event_type,
                    event.event_subtype,
                    json.dumps(event.raw_payload),
                    event.channel_id,
                    event.status.value,
                    event.attempts,
                    _to_db_value(event.last_attempt_at),
                    event.error_message,
                    event.resulting_message_id,
                    _to_db_value(event.created_at),
                    _to_db_value(event.updated_at),
                ),
            )
        return event

    def update_ingest_event(self, event_id: str, **changes: Any) -> None:
        unknown = set(changes) - INGEST_EVENT_UPDATABLE_COLUMNS
        if unknown:
            raise RepositoryError(f"Cannot update ingest_events columns: {unknown}")

        changes["updated_at"] = datetime.now(UTC)
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [_to_db_value(value) for value in changes.values()]
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE ingest_events SET {assignments} WHERE id = ?",
                (*params, event_id),
            )

    def get_ingest_event(self, event_id: str) -> IngestEvent | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM ingest_events WHERE id = ?", (event_id,)
            ).fetchone()
        return self._row_to_ingest_event(row) if row else None

    def list_failed_ingest_events(
        self, max_attempts: int, limit: int
    ) -> list[IngestEvent]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM ingest_events
                WHERE status = ? AND attempts < ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (IngestEventStatus.FAILED.value, max_attempts, limit),
            ).fetchall()
        return [self._row_to_ingest_event(row) for row in rows]

    def count_ingest_events_by_status(self) -> dict[IngestEventStatus, int]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM ingest_events GROUP BY status"
            ).fetchall()
        return {IngestEventStatus(row["status"]): int(row["total"]) for row in rows}

    # Row mapping ------------------------------------------------------

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            external_id=row["external_id"],
            channel_id=row["channel_id"],
            text=row["text"],
            author_id=row["author_id"],
            author_display=row["author_display"] or "",
            timestamp=_parse_dt(row["timestamp"]),
            thread_root_external_id=row["thread_root_external_id"],
            is_thread_reply=bool(row["is_thread_reply"]),
            parent_message_id=row["parent_message_id"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_ingest_event(row: sqlite3.Row) -> IngestEvent:
        return IngestEvent(
            id=row["id"],
            external_event_id=row["external_event_id"] or "",
            event_type=row["event_type"],
            event_subtype=row["event_subtype"],
            raw_payload=json.loads(row["raw_payload"]),
            channel_id=row["channel_id"],
            status=IngestEventStatus(row["status"]),
            attempts=row["attempts"],
            last_attempt_at=_parse_dt(row["last_attempt_at"]),
            error_message=row["error_message"],
            resulting_message_id=row["resulting_message_id"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )
