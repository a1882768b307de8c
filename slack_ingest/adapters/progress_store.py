"""In-memory progress store for backfill operations."""

from __future__ import annotations

import threading
from datetime import UTC, datetime

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.models import BackfillOperation

logger = get_logger(__name__)


class InMemoryProgressStore:
    """Keyed snapshots of backfill operations held in process memory.

    Every read and write goes through a deep copy so callers never share a
    mutable snapshot with the orchestrator.
    """

    def __init__(self) -> None:
        self._operations: dict[str, BackfillOperation] = {}
        self._lock = threading.RLock()

    def get(self, operation_id: str) -> BackfillOperation | None:
        with self._lock:
            operation = self._operations.get(operation_id)
            return operation.model_copy(deep=True) if operation else None

    def set(self, operation: BackfillOperation) -> None:
        with self._lock:
            self._operations[operation.id] = operation.model_copy(deep=True)

    def delete(self, operation_id: str) -> bool:
        with self._lock:
            return self._operations.pop(operation_id, None) is not None

    def list(self) -> list[BackfillOperation]:
        with self._lock:
            return [
                operation.model_copy(deep=True)
                for operation in self._operations.values()
            ]

    def sweep(self, max_age_seconds: float, now: datetime | None = None) -> int:
        current = now or datetime.now(UTC)
        with self._lock:
            expired = [
                operation_id
                for operation_id, operation in self._operations.items()
                if (current - operation.created_at).total_seconds() > max_age_seconds
            ]
            for operation_id in expired:
                del self._operations[operation_id]

        if expired:
            logger.info("progress_store_swept", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)
