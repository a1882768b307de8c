"""Parsing of Slack Events API payloads into typed event variants.

Dispatch rules for ``event_callback`` envelopes follow the shape of the nested
event: ``deleted_ts`` means deletion, ``message`` plus ``previous_message``
means edit, ``text`` plus ``user`` means creation.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Final
from uuid import uuid4

import pytz

from slack_ingest.domain.envelopes import (
    EventEnvelope,
    MessageCreatedEvent,
    MessageDeletedEvent,
    MessageEditedEvent,
    UnknownEvent,
    VerificationEnvelope,
)
from slack_ingest.domain.exceptions import ValidationError

VERIFICATION_TYPES: Final[frozenset[str]] = frozenset(
    {"url_verification", "verification"}
)
EVENT_CALLBACK_TYPE: Final[str] = "event_callback"

# Subtypes that still represent a human-authored message worth storing.
CREATABLE_SUBTYPES: Final[frozenset[str | None]] = frozenset(
    {None, "thread_broadcast", "file_share"}
)

HISTORY_APP_ID: Final[str] = "channel_backfill"


def parse_slack_timestamp(ts: str) -> datetime:
    """Convert a Slack ``ts`` ("1234567890.123456") to an aware UTC datetime.

    Raises:
        ValidationError: If ts is not a numeric Slack timestamp
    """
    try:
        return datetime.fromtimestamp(float(ts), tz=pytz.UTC)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValidationError(f"Invalid Slack timestamp: {ts!r}") from exc


def format_username(user_id: str) -> str:
    """Display name used until a real profile lookup is available.

    Example:
        >>> format_username("U0123456789")
        'user_0123456'
    """
    return f"user_{user_id[1:8]}" if user_id.startswith("U") else user_id


def _require_str(container: dict[str, Any], key: str, context: str) -> str:
    value = container.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{context} is missing '{key}'")
    return value


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_envelope(payload: Any) -> EventEnvelope:
    """Parse a raw webhook payload into exactly one event variant.

    Args:
        payload: Decoded JSON body of the webhook request

    Returns:
        Typed envelope variant

    Raises:
        ValidationError: If the payload is malformed
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")

    envelope_type = payload.get("type")
    if not isinstance(envelope_type, str) or not envelope_type:
        raise ValidationError("Payload is missing 'type'")

    event_id = _optional_str(payload.get("event_id")) or (
        f"{int(time.time() * 1000)}-{uuid4().hex[:8]}"
    )

    if envelope_type in VERIFICATION_TYPES:
        return VerificationEnvelope(
            event_id=event_id,
            event_type=envelope_type,
            challenge=_require_str(payload, "challenge", "Verification payload"),
        )

    if envelope_type != EVENT_CALLBACK_TYPE:
        return UnknownEvent(
            event_id=event_id,
            event_type=envelope_type,
            reason=f"unsupported_envelope_type:{envelope_type}",
        )

    event = payload.get("event")
    if not isinstance(event, dict):
        raise ValidationError("event_callback payload is missing 'event'")

    event_type = event.get("type") if isinstance(event.get("type"), str) else "message"
    subtype = _optional_str(event.get("subtype"))
    channel_id = _optional_str(event.get("channel"))
    common: dict[str, Any] = {
        "event_id": event_id,
        "event_type": event_type,
        "event_subtype": subtype,
    }

    if event.get("deleted_ts"):
        return MessageDeletedEvent(
            **common,
            channel_id=_require_str(event, "channel", "Deletion event"),
            external_id=_require_str(event, "deleted_ts", "Deletion event"),
        )

    edited = event.get("message")
    previous = event.get("previous_message")
    if edited and previous:
        if not isinstance(edited, dict) or not isinstance(previous, dict):
            raise ValidationError("Edit event carries malformed message data")
        new_text = edited.get("text")
        return MessageEditedEvent(
            **common,
            channel_id=_require_str(event, "channel", "Edit event"),
            external_id=_require_str(edited, "ts", "Edited message"),
            new_text=new_text if isinstance(new_text, str) else "",
            previous_text=_optional_str(previous.get("text")),
        )

    if event.get("bot_id") or subtype == "bot_message":
        return UnknownEvent(**common, channel_id=channel_id, reason="bot_message")

    if subtype not in CREATABLE_SUBTYPES:
        return UnknownEvent(
            **common, channel_id=channel_id, reason=f"unhandled_subtype:{subtype}"
        )

    text = event.get("text")
    user = event.get("user")
    if event_type == "message" and text and user:
        return MessageCreatedEvent(
            **common,
            channel_id=_require_str(event, "channel", "Message event"),
            external_id=_require_str(event, "ts", "Message event"),
            author_id=str(user),
            text=str(text),
            thread_ts=_optional_str(event.get("thread_ts")),
        )

    return UnknownEvent(**common, channel_id=channel_id, reason="not_a_message_event")


def build_history_payload(
    message: dict[str, Any], channel_id: str, *, thread_reply: bool = False
) -> dict[str, Any]:
    """Wrap a conversations.history / conversations.replies item as a webhook payload.

    History items do not carry the channel id, so it is taken from the caller.
    The result is stored verbatim in the audit log and can be replayed.
    """
    ts = str(message.get("ts", ""))
    prefix = "historical_thread" if thread_reply else "historical"
    event: dict[str, Any] = {
        "type": message.get("type", "message"),
        "user": message.get("user"),
        "text": message.get("text"),
        "ts": ts,
        "channel": channel_id,
        "event_ts": ts,
        "thread_ts": message.get("thread_ts"),
        "subtype": message.get("subtype"),
    }
    if message.get("bot_id"):
        event["bot_id"] = message["bot_id"]

    try:
        event_time = int(float(ts))
    except ValueError:
        event_time = 0

    return {
        "type": EVENT_CALLBACK_TYPE,
        "api_app_id": HISTORY_APP_ID,
        "event_id": f"{prefix}_{ts}",
        "event_time": event_time,
        "event": event,
    }


__all__ = [
    "build_history_payload",
    "format_username",
    "parse_envelope",
    "parse_slack_timestamp",
]
