"""PostgreSQL repository implementation using psycopg2 with connection pooling.

The schema is owned by Alembic (see ``alembic/versions``); this adapter only
reads and writes rows.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import Json, RealDictCursor

from slack_ingest.adapters.sqlite_repository import INGEST_EVENT_UPDATABLE_COLUMNS
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

if TYPE_CHECKING:
    from slack_ingest.config.settings import Settings


DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 2
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 10
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)


def _to_db_value(value: Any) -> Any:
    if isinstance(value, IngestEventStatus | PIISourceType):
        return value.value
    if isinstance(value, dict):
        return Json(value)
    return value


class PostgresRepository:
    """PostgreSQL repository backed by a connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
    ):
        """Initialize PostgreSQL repository with pooled connections."""
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password

        self._statement_timeout_ms = (
            settings.postgres_statement_timeout_ms if settings else 10_000
        )
        self._connect_timeout_seconds = (
            settings.postgres_connect_timeout_seconds if settings else 10
        )
        self._application_name = (
            settings.postgres_application_name if settings else "slack_ingest"
        )
        self._pool_min_connections = (
            settings.postgres_min_connections
            if settings
            else DEFAULT_POOL_MIN_CONNECTIONS
        )
        self._pool_max_connections = (
            settings.postgres_max_connections
            if settings
            else DEFAULT_POOL_MAX_CONNECTIONS
        )
        self._ssl_mode = settings.postgres_ssl_mode if settings else None
        self._pool_in_use_count = 0
        self._pool_lock = Lock()

        if self._pool_min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self._pool_max_connections < self._pool_min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        self._pool = self._create_pool()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        """Create a PostgreSQL connection pool with validation."""
        conn_kwargs: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "database": self._database,
            "user": self._user,
            "password": self._password,
            "connect_timeout": self._connect_timeout_seconds,
            "options": (
                f"-c statement_timeout={self._statement_timeout_ms} "
                f"-c application_name={self._application_name}"
            ),
        }
        if self._ssl_mode:
            conn_kwargs["sslmode"] = self._ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._pool_min_connections,
                self._pool_max_connections,
                **conn_kwargs,
            )
        except PsycopgError as exc:
            raise RepositoryError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._pool_min_connections,
            max_connections=self._pool_max_connections,
        )
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Acquire a connection from the pool with exponential backoff."""
        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._pool_max_connections,
                        in_use=self._pool_in_use_count,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    in_use=self._pool_in_use_count,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)
                continue

            with self._pool_lock:
                self._pool_in_use_count += 1
            return conn

    def _release_connection(self, conn: extensions.connection, *, close: bool) -> None:
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning(
                "postgres_putconn_failed",
                database=self._database,
                close=close,
                exc_info=True,
            )
        finally:
            with self._pool_lock:
                if self._pool_in_use_count > 0:
                    self._pool_in_use_count -= 1

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        with self._pool_lock:
            self._pool_in_use_count = 0
        logger.info("postgres_pool_closed", database=self._database)

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection from the pool, commit on success, roll back on error."""
        conn = self._acquire_connection_with_retry()
        conn.autocommit = False
        try:
            yield conn
            conn.commit()
        except PsycopgError as exc:
            try:
                conn.rollback()
            except PsycopgError:
                logger.warning(
                    "postgres_connection_rollback_failed",
                    database=self._database,
                    exc_info=True,
                )
                self._release_connection(conn, close=True)
                raise RepositoryError(f"PostgreSQL connection error: {exc}") from exc
            self._release_connection(conn, close=False)
            raise RepositoryError(f"PostgreSQL operation failed: {exc}") from exc
        except BaseException:
            conn.rollback()
            self._release_connection(conn, close=False)
            raise
        else:
            self._release_connection(conn, close=False)

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur

    # Messages ---------------------------------------------------------

    def get_message(self, external_id: str, channel_id: str) -> Message | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM messages WHERE external_id = %s AND channel_id = %s",
                (external_id, channel_id),
            )
            row = cur.fetchone()
        return self._row_to_message(row) if row else None

    def find_messages(self, external_id: str, channel_id: str) -> list[Message]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM messages WHERE external_id = %s AND channel_id = %s",
                (external_id, channel_id),
            )
            rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def find_thread_replies(
        self, thread_root_external_id: str, channel_id: str
    ) -> list[Message]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM messages
                WHERE thread_root_external_id = %s AND channel_id = %s
                  AND external_id <> %s
                ORDER BY timestamp
                """,
                (thread_root_external_id, channel_id, thread_root_external_id),
            )
            rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def insert_message(self, message: Message) -> Message:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages (
                    id, external_id, channel_id, text, author_id, author_display,
                    timestamp, thread_root_external_id, is_thread_reply,
                    parent_message_id, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (external_id, channel_id) DO NOTHING
                RETURNING id
                """,
                (
                    message.id,
                    message.external_id,
                    message.channel_id,
                    message.text,
                    message.author_id,
                    message.author_display,
                    message.timestamp,
                    message.thread_root_external_id,
                    message.is_thread_reply,
                    message.parent_message_id,
                    message.created_at,
                    message.updated_at,
                ),
            )
            inserted = cur.fetchone()

        if inserted is None:
            raise DuplicateMessageError(message.external_id, message.channel_id)
        return message

    def update_message_text(self, external_id: str, channel_id: str, text: str) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE messages SET text = %s, updated_at = %s
                WHERE external_id = %s AND channel_id = %s
                """,
                (text, datetime.now(UTC), external_id, channel_id),
            )
            return int(cur.rowcount)

    def delete_messages(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0

        with self._cursor() as cur:
            cur.execute(
                """
                DELETE FROM pii_detections
                WHERE source_type = %s AND source_id = ANY(%s)
                """,
                (PIISourceType.MESSAGE.value, list(message_ids)),
            )
            cur.execute(
                "DELETE FROM messages WHERE id = ANY(%s)", (list(message_ids),)
            )
            return int(cur.rowcount)

    def count_messages(self, channel_id: str | None = None) -> int:
        with self._cursor() as cur:
            if channel_id is None:
                cur.execute("SELECT COUNT(*) AS total FROM messages")
            else:
                cur.execute(
                    "SELECT COUNT(*) AS total FROM messages WHERE channel_id = %s",
                    (channel_id,),
                )
            row = cur.fetchone()
        return int(row["total"]) if row else 0

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
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM pii_detections WHERE source_type = %s AND source_id = %s",
                (PIISourceType.MESSAGE.value, source_id),
            )
            for detection in detections:
                cur.execute(
                    """
                    INSERT INTO pii_detections (
                        id, source_type, source_id, pii_type, span_text,
                        span_start, span_end, confidence, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        detection.id,
                        detection.source_type.value,
                        detection.source_id,
                        detection.pii_type,
                        detection.span_text,
                        detection.span_start,
                        detection.span_end,
                        detection.confidence,
                        detection.created_at,
                    ),
                )
        return detections

    def list_pii_detections(self, source_id: str) -> list[PIIDetection]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM pii_detections
                WHERE source_type = %s AND source_id = %s
                ORDER BY span_start
                """,
                (PIISourceType.MESSAGE.value, source_id),
            )
            rows = cur.fetchall()
        return [
            PIIDetection(
                id=str(row["id"]),
                source_type=PIISourceType(row["source_type"]),
                source_id=str(row["source_id"]),
                pii_type=row["pii_type"],
                span_text=row["span_text"],
                span_start=row["span_start"],
                span_end=row["span_end"],
                confidence=float(row["confidence"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Audit log --------------------------------------------------------

    def create_ingest_event(self, event: IngestEvent) -> IngestEvent:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO ingest_events (
                    id, external_event_id, event_type, event_subtype, raw_payload,
                    channel_id, status, attempts, last_attempt_at, error_message,
                    resulting_message_id, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.external_event_id,
                    event.event_type,
                    event.event_subtype,
                    Json(event.raw_payload),
                    event.channel_id,
                    event.status.value,
                    event.attempts,
                    event.last_attempt_at,
                    event.error_message,
                    event.resulting_message_id,
                    event.created_at,
                    event.updated_at,
                ),
            )
        return event

    def update_ingest_event(self, event_id: str, **changes: Any) -> None:
        unknown = set(changes) - INGEST_EVENT_UPDATABLE_COLUMNS
        if unknown:
            raise RepositoryError(f"Cannot update ingest_events columns: {unknown}")

        changes["updated_at"] = datetime.now(UTC)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = [_to_db_value(value) for value in changes.values()]
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE ingest_events SET {assignments} WHERE id = %s",
                (*params, event_id),
            )

    def get_ingest_event(self, event_id: str) -> IngestEvent | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM ingest_events WHERE id = %s", (event_id,))
            row = cur.fetchone()
        return self._row_to_ingest_event(row) if row else None

    def list_failed_ingest_events(
        self, max_attempts: int, limit: int
    ) -> list[IngestEvent]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM ingest_events
                WHERE status = %s AND attempts < %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (IngestEventStatus.FAILED.value, max_attempts, limit),
            )
            rows = cur.fetchall()
        return [self._row_to_ingest_event(row) for row in rows]

    def count_ingest_events_by_status(self) -> dict[IngestEventStatus, int]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT status, COUNT(*) AS total FROM ingest_events GROUP BY status"
            )
            rows = cur.fetchall()
        return {IngestEventStatus(row["status"]): int(row["total"]) for row in rows}

    # Row mapping ------------------------------------------------------

    @staticmethod
    def _row_to_message(row: dict[str, Any]) -> Message:
        return Message(
            id=str(row["id"]),
            external_id=row["external_id"],
            channel_id=row["channel_id"],
            text=row["text"],
            author_id=row["author_id"],
            author_display=row["author_display"] or "",
            timestamp=row["timestamp"],
            thread_root_external_id=row["thread_root_external_id"],
            is_thread_reply=bool(row["is_thread_reply"]),
            parent_message_id=(
                str(row["parent_message_id"]) if row["parent_message_id"] else None
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_ingest_event(row: dict[str, Any]) -> IngestEvent:
        return IngestEvent(
            id=str(row["id"]),
            external_event_id=row["external_event_id"] or "",
            event_type=row["event_type"],
            event_subtype=row["event_subtype"],
            raw_payload=row["raw_payload"] or {},
            channel_id=row["channel_id"],
            status=IngestEventStatus(row["status"]),
            attempts=row["attempts"],
            last_attempt_at=row["last_attempt_at"],
            error_message=row["error_message"],
            resulting_message_id=(
                str(row["resulting_message_id"])
                if row["resulting_message_id"]
                else None
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
