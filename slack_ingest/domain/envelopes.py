"""Closed set of inbound event variants.

Raw webhook payloads are parsed once at the ingress boundary (see
``slack_ingest.services.envelope``) into exactly one of these models; the event
processor dispatches on the variant type and never inspects raw optional fields.
"""

from pydantic import BaseModel, ConfigDict


class _Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    event_subtype: str | None = None
    channel_id: str | None = None


class VerificationEnvelope(_Envelope):
    """url_verification handshake; the challenge must be echoed back."""

    challenge: str


class MessageCreatedEvent(_Envelope):
    """New message (top-level or thread reply)."""

    channel_id: str
    external_id: str
    author_id: str
    text: str
    thread_ts: str | None = None

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.external_id


class MessageEditedEvent(_Envelope):
    """message_changed: text of an existing message was edited."""

    channel_id: str
    external_id: str
    new_text: str
    previous_text: str | None = None


class MessageDeletedEvent(_Envelope):
    """message_deleted: an existing message was removed."""

    channel_id: str
    external_id: str


class UnknownEvent(_Envelope):
    """Anything this pipeline does not handle (bot messages, other subtypes)."""

    reason: str


EventEnvelope = (
    VerificationEnvelope
    | MessageCreatedEvent
    | MessageEditedEvent
    | MessageDeletedEvent
    | UnknownEvent
)

__all__ = [
    "EventEnvelope",
    "MessageCreatedEvent",
    "MessageDeletedEvent",
    "MessageEditedEvent",
    "UnknownEvent",
    "VerificationEnvelope",
]
