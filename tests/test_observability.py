"""Structured logging context and Prometheus counters."""

from __future__ import annotations

import asyncio

import structlog
from prometheus_client import REGISTRY

from slack_ingest.config.logging_config import (
    add_service_context,
    bind_context,
    clear_context,
    mask_slack_tokens,
    unbind_context,
)
from slack_ingest.use_cases.process_event import EventProcessor
from tests.conftest import message_payload


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_context_binding_is_scoped_per_key() -> None:
    clear_context()

    bind_context(operation_id="op-1", channel_id="C0123ABCD")
    assert structlog.contextvars.get_contextvars() == {
        "operation_id": "op-1",
        "channel_id": "C0123ABCD",
    }

    unbind_context("channel_id")
    assert structlog.contextvars.get_contextvars() == {"operation_id": "op-1"}

    clear_context()
    assert structlog.contextvars.get_contextvars() == {}


def test_service_context_tags_pipeline_from_bound_keys() -> None:
    backfill = add_service_context(
        None, "info", {"event": "backfill_started", "operation_id": "op-1"}  # type: ignore[arg-type]
    )
    webhook = add_service_context(None, "info", {"event": "event_processed"})  # type: ignore[arg-type]

    assert backfill["service"] == "slack_ingest"
    assert backfill["pipeline"] == "backfill"
    assert webhook["pipeline"] == "events"


def test_slack_tokens_are_masked() -> None:
    event = mask_slack_tokens(
        None,  # type: ignore[arg-type]
        "warning",
        {"event": "slack_api_error", "error": "bad auth for xoxb-1234-abcd", "attempt": 2},
    )

    assert event["error"] == "bad auth for xox*-***"
    assert event["attempt"] == 2


def test_ingest_outcomes_are_counted(processor: EventProcessor) -> None:
    before_success = _sample("slack_ingest_events_total", outcome="SUCCESS")
    before_duplicate = _sample("slack_ingest_events_total", outcome="DUPLICATE")

    payload = message_payload("1700000000.000100")
    asyncio.run(processor.process(payload))
    asyncio.run(processor.process(payload))

    assert _sample("slack_ingest_events_total", outcome="SUCCESS") == before_success + 1
    assert (
        _sample("slack_ingest_events_total", outcome="DUPLICATE")
        == before_duplicate + 1
    )
