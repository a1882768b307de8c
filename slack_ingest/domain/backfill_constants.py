"""Business rules and constants for channel backfill operations.

Progress bands, validation bounds and retention windows are centralized here so
the orchestrator, settings and tests agree on them.
"""

import re
from typing import Final

CHANNEL_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[CDG][A-Z0-9]+$")
"""Slack conversation ids: C (public), G (private/group) or D (direct message)."""

DEFAULT_PAGE_SIZE: Final[int] = 100
MAX_PAGE_SIZE: Final[int] = 200
"""conversations.history accepts up to 1000, but Slack recommends <= 200."""

DEFAULT_DELAY_SECONDS: Final[float] = 1.0
MIN_DELAY_SECONDS: Final[float] = 0.5
"""Floor for the inter-request delay, keeps a backfill under Tier 3 limits."""

THREAD_REPLIES_LIMIT: Final[int] = 1000

# Progress bands (percent)
PROGRESS_FETCH_START: Final[float] = 5.0
PROGRESS_FETCH_END: Final[float] = 20.0
PROGRESS_FETCH_SCALE_MESSAGES: Final[int] = 50
"""Fetch progress rises 15 points per 50 fetched messages, capped at the band end."""

PROGRESS_PROCESS_START: Final[float] = 20.0
PROGRESS_PROCESS_END: Final[float] = 70.0
PROGRESS_THREADS_START: Final[float] = 70.0
PROGRESS_THREADS_END: Final[float] = 90.0
PROGRESS_COMPLETE: Final[float] = 100.0

CANCELLATION_CHECK_INTERVAL: Final[int] = 10
"""Messages processed between two cancellation checkpoints."""

PROGRESS_PERSIST_INTERVAL: Final[int] = 50
"""Messages processed between two progress store writes."""

THREAD_PROGRESS_PERSIST_INTERVAL: Final[int] = 10

# Retention (seconds)
COMPLETED_RETENTION_SECONDS: Final[float] = 5 * 60
FAILED_RETENTION_SECONDS: Final[float] = 2 * 60
MAX_RECORD_AGE_SECONDS: Final[float] = 60 * 60

__all__ = [
    "CANCELLATION_CHECK_INTERVAL",
    "CHANNEL_ID_PATTERN",
    "COMPLETED_RETENTION_SECONDS",
    "DEFAULT_DELAY_SECONDS",
    "DEFAULT_PAGE_SIZE",
    "FAILED_RETENTION_SECONDS",
    "MAX_PAGE_SIZE",
    "MAX_RECORD_AGE_SECONDS",
    "MIN_DELAY_SECONDS",
    "PROGRESS_COMPLETE",
    "PROGRESS_FETCH_END",
    "PROGRESS_FETCH_SCALE_MESSAGES",
    "PROGRESS_FETCH_START",
    "PROGRESS_PERSIST_INTERVAL",
    "PROGRESS_PROCESS_END",
    "PROGRESS_PROCESS_START",
    "PROGRESS_THREADS_END",
    "PROGRESS_THREADS_START",
    "THREAD_PROGRESS_PERSIST_INTERVAL",
    "THREAD_REPLIES_LIMIT",
]
