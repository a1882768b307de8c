"""Prometheus metrics for ingestion, backfill and Slack throttling."""

from __future__ import annotations

import os
import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from slack_ingest.config.logging_config import get_logger

logger = get_logger(__name__)

INGEST_EVENTS_TOTAL: Final[Counter] = Counter(
    "slack_ingest_events_total",
    "Inbound events processed, by outcome",
    labelnames=("outcome",),
)

BACKFILL_OPERATIONS_TOTAL: Final[Counter] = Counter(
    "slack_ingest_backfill_operations_total",
    "Backfill operations finished, by terminal status",
    labelnames=("status",),
)

BACKFILL_DURATION_SECONDS: Final[Histogram] = Histogram(
    "slack_ingest_backfill_duration_seconds",
    "Wall-clock duration of backfill operations in seconds",
    labelnames=("status",),
)

SLACK_RATE_LIMITED_TOTAL: Final[Counter] = Counter(
    "slack_ingest_slack_rate_limited_total",
    "Slack API calls that were throttled, by method",
    labelnames=("method",),
)

RETRY_SWEEP_EVENTS_TOTAL: Final[Counter] = Counter(
    "slack_ingest_retry_sweep_events_total",
    "Failed events replayed by the retry sweep, by outcome",
    labelnames=("outcome",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"


def _resolve_metrics_port(port: int | None) -> int:
    if port is not None:
        return port
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def start_metrics_server(port: int | None = None) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        resolved_port = _resolve_metrics_port(port)
        try:
            start_http_server(resolved_port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=resolved_port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=resolved_port)


__all__ = [
    "BACKFILL_DURATION_SECONDS",
    "BACKFILL_OPERATIONS_TOTAL",
    "INGEST_EVENTS_TOTAL",
    "RETRY_SWEEP_EVENTS_TOTAL",
    "SLACK_RATE_LIMITED_TOTAL",
    "start_metrics_server",
]
