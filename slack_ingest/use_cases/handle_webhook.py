"""Webhook ingress for the Slack Events API.

Verifies the request signature, parses the body into an event variant and
hands it to the event processor. Slack gets a 200 as soon as the audit row is
written, whatever the processing outcome.
"""

from __future__ import annotations

import hmac
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from slack_sdk.signature import SignatureVerifier

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.envelopes import VerificationEnvelope
from slack_ingest.domain.exceptions import ValidationError
from slack_ingest.services.envelope import parse_envelope
from slack_ingest.use_cases.process_event import EventProcessor

logger = get_logger(__name__)

TIMESTAMP_HEADER: Final[str] = "x-slack-request-timestamp"
SIGNATURE_HEADER: Final[str] = "x-slack-signature"
DEFAULT_SIGNATURE_TOLERANCE_SECONDS: Final[int] = 300


@dataclass(slots=True)
class WebhookResponse:
    """HTTP-level answer for the webhook caller."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class WebhookHandler:
    """Entry point for Events API deliveries."""

    def __init__(
        self,
        processor: EventProcessor,
        *,
        signing_secret: str | None,
        tolerance_seconds: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._processor = processor
        self._verifier = SignatureVerifier(signing_secret) if signing_secret else None
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock
        if self._verifier is None:
            logger.warning("webhook_signature_verification_disabled")

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse | None:
        """Return an error response when the request is not authentic, else None."""
        if self._verifier is None:
            return None

        timestamp = _header(headers, TIMESTAMP_HEADER)
        signature = _header(headers, SIGNATURE_HEADER)
        if not timestamp or not signature:
            return WebhookResponse(400, {"error": "Missing signature headers"})

        try:
            request_time = int(timestamp)
        except ValueError:
            return WebhookResponse(400, {"error": "Invalid request timestamp"})

        if abs(self._clock() - request_time) > self._tolerance_seconds:
            logger.warning("webhook_signature_stale", request_timestamp=request_time)
            return WebhookResponse(401, {"error": "Request timestamp out of range"})

        expected = self._verifier.generate_signature(timestamp=timestamp, body=body)
        if expected is None or not hmac.compare_digest(expected, signature):
            logger.warning("webhook_signature_invalid")
            return WebhookResponse(401, {"error": "Invalid signature"})
        return None

    async def handle(
        self, body: bytes | str, headers: Mapping[str, str]
    ) -> WebhookResponse:
        raw_body = body.encode("utf-8") if isinstance(body, str) else body

        rejection = self.verify_signature(raw_body, headers)
        if rejection is not None:
            return rejection

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return WebhookResponse(400, {"error": "Body is not valid JSON"})

        try:
            envelope = parse_envelope(payload)
        except ValidationError as exc:
            logger.warning("webhook_payload_rejected", error=str(exc))
            return WebhookResponse(400, {"error": str(exc)})

        result = await self._processor.process_envelope(envelope, payload)
        if result.ingest_event_id is None:
            return WebhookResponse(500, {"error": result.error or "Audit log unavailable"})

        if isinstance(envelope, VerificationEnvelope):
            return WebhookResponse(200, {"challenge": envelope.challenge})

        return WebhookResponse(
            200,
            {
                "ok": True,
                "outcome": result.outcome.value,
                "ingest_event_id": result.ingest_event_id,
            },
        )


__all__ = ["WebhookHandler", "WebhookResponse"]
