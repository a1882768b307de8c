"""Async Slack Web API adapter used by channel backfills.

Wraps ``slack_sdk``'s ``AsyncWebClient`` and translates its errors into the
domain hierarchy. Throttled calls (HTTP 429 / ``ratelimited``) are retried with
backoff; the ``Retry-After`` header takes precedence over the computed delay.
Callers pass ``cancel_check`` to abort a throttled call around each sleep.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Final, cast

import aiohttp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.exceptions import (
    AccessDeniedError,
    RateLimitError,
    SlackAPIError,
)
from slack_ingest.domain.models import ChannelInfo, MessagePage
from slack_ingest.observability.metrics import SLACK_RATE_LIMITED_TOTAL
from slack_ingest.services.backoff import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_DELAY_SECONDS,
    compute_backoff_delay,
)

__all__ = ["SlackClient"]

logger = get_logger(__name__)

AsyncSleepCallable = Callable[[float], Awaitable[None]]
# Raises when the surrounding operation was cancelled.
CancelCheck = Callable[[], None]

MAX_RATE_LIMIT_ATTEMPTS: Final[int] = 5
HTTP_STATUS_TOO_MANY_REQUESTS: Final[int] = 429
CHANNEL_LIST_PAGE_SIZE: Final[int] = 200
CHANNEL_LIST_TYPES: Final[str] = "public_channel,private_channel"
ACCESS_DENIED_ERRORS: Final[frozenset[str]] = frozenset(
    {"not_in_channel", "channel_not_found", "missing_scope"}
)


def _to_slack_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return f"{value.timestamp():.6f}"


def _extract_data(response: Any) -> dict[str, Any]:
    if hasattr(response, "data"):
        return cast(dict[str, Any], response.data)
    return cast(dict[str, Any], response)


def _next_cursor(data: dict[str, Any]) -> str | None:
    metadata = data.get("response_metadata")
    if not isinstance(metadata, dict):
        return None
    cursor = metadata.get("next_cursor")
    return cursor or None


def _channel_from_payload(channel: dict[str, Any]) -> ChannelInfo:
    return ChannelInfo(
        id=str(channel.get("id", "")),
        name=str(channel.get("name") or channel.get("id", "")),
        is_private=bool(channel.get("is_private", False)),
        is_member=bool(channel.get("is_member", False)),
        member_count=channel.get("num_members"),
    )


class SlackClient:
    """Slack Web API client for history, threads and channel metadata."""

    def __init__(
        self,
        bot_token: str,
        *,
        client: AsyncWebClient | None = None,
        sleep: AsyncSleepCallable | None = None,
        max_rate_limit_attempts: int = MAX_RATE_LIMIT_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        backoff_max_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        """Initialize Slack client.

        Args:
            bot_token: Slack bot user OAuth token
            client: Preconfigured AsyncWebClient (tests inject a fake)
            sleep: Awaitable sleep used between throttled retries
            max_rate_limit_attempts: Retries of one throttled call before giving up
            backoff_base_seconds: Base delay when Slack sends no Retry-After
            backoff_max_seconds: Upper bound for computed delays
        """
        self.client = client or AsyncWebClient(token=bot_token)
        self._sleep = sleep or asyncio.sleep
        self._max_rate_limit_attempts = max(max_rate_limit_attempts, 1)
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds

    async def list_messages(
        self,
        channel_id: str,
        *,
        cursor: str | None = None,
        limit: int = 100,
        oldest: datetime | None = None,
        latest: datetime | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> MessagePage:
        params: dict[str, Any] = {"channel": channel_id, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        if oldest is not None:
            params["oldest"] = _to_slack_ts(oldest)
        if latest is not None:
            params["latest"] = _to_slack_ts(latest)
        if oldest is not None or latest is not None:
            params["inclusive"] = True

        data = await self._call_with_backoff(
            lambda: self.client.conversations_history(**params),
            action="conversations_history",
            context={"channel_id": channel_id, "cursor": cursor},
            cancel_check=cancel_check,
        )
        messages = cast(list[dict[str, Any]], data.get("messages") or [])
        next_cursor = _next_cursor(data)
        return MessagePage(
            messages=messages,
            has_more=bool(data.get("has_more", False)) and next_cursor is not None,
            next_cursor=next_cursor,
        )

    async def list_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        *,
        limit: int = 1000,
        cancel_check: CancelCheck | None = None,
    ) -> list[dict[str, Any]]:
        """Return replies of a thread in chronological order, root excluded."""
        replies: list[dict[str, Any]] = []
        cursor: str | None = None

        while True:
            cursor_value = cursor
            data = await self._call_with_backoff(
                lambda: self.client.conversations_replies(
                    channel=channel_id, ts=thread_ts, limit=limit, cursor=cursor_value
                ),
                action="conversations_replies",
                context={"channel_id": channel_id, "thread_ts": thread_ts},
                cancel_check=cancel_check,
            )
            for message in data.get("messages") or []:
                if message.get("ts") == thread_ts:
                    continue
                replies.append(message)

            cursor = _next_cursor(data)
            if not cursor or len(replies) >= limit:
                break

        return replies[:limit]

    async def get_channel_metadata(
        self, channel_id: str, *, cancel_check: CancelCheck | None = None
    ) -> ChannelInfo:
        data = await self._call_with_backoff(
            lambda: self.client.conversations_info(
                channel=channel_id, include_num_members=True
            ),
            action="conversations_info",
            context={"channel_id": channel_id},
            cancel_check=cancel_check,
        )
        channel = data.get("channel")
        if not isinstance(channel, dict):
            raise SlackAPIError(f"conversations.info returned no channel for {channel_id}")
        return _channel_from_payload(channel)

    async def list_channels(self) -> list[ChannelInfo]:
        """Channels the bot is a member of."""
        channels = await self._list_conversations()
        return [channel for channel in channels if channel.is_member]

    async def list_all_channels(self) -> list[ChannelInfo]:
        """All visible channels with a membership flag.

        Private channels without membership are never returned.
        """
        visible: list[ChannelInfo] = []
        for channel in await self._list_conversations():
            if channel.is_private and not channel.is_member:
                logger.warning(
                    "slack_private_channel_without_membership",
                    channel_id=channel.id,
                )
                continue
            visible.append(channel)
        return visible

    async def _list_conversations(self) -> list[ChannelInfo]:
        channels: list[ChannelInfo] = []
        cursor: str | None = None

        while True:
            cursor_value = cursor
            data = await self._call_with_backoff(
                lambda: self.client.conversations_list(
                    types=CHANNEL_LIST_TYPES,
                    exclude_archived=True,
                    limit=CHANNEL_LIST_PAGE_SIZE,
                    cursor=cursor_value,
                ),
                action="conversations_list",
            )
            channels.extend(
                _channel_from_payload(channel)
                for channel in data.get("channels") or []
                if isinstance(channel, dict)
            )
            cursor = _next_cursor(data)
            if not cursor:
                break

        logger.info("slack_channels_listed", total=len(channels))
        return channels

    async def _call_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        action: str,
        context: dict[str, Any] | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> dict[str, Any]:
        attempts = 0
        while True:
            try:
                response = await func()
                return _extract_data(response)
            except SlackApiError as exc:
                error_code = self._error_code(exc)
                if not self._is_rate_limited(exc, error_code):
                    logger.warning(
                        "slack_api_error",
                        action=action,
                        error=error_code or str(exc),
                        context=context or {},
                    )
                    if error_code in ACCESS_DENIED_ERRORS:
                        raise AccessDeniedError(
                            f"Slack denied {action}: {error_code}"
                        ) from exc
                    raise SlackAPIError(f"{action} failed: {error_code or exc}") from exc

                retry_after = self._retry_after_seconds(exc)
                SLACK_RATE_LIMITED_TOTAL.labels(method=action).inc()
                if attempts >= self._max_rate_limit_attempts:
                    logger.error(
                        "slack_rate_limit_exhausted",
                        action=action,
                        attempts=attempts,
                        context=context or {},
                    )
                    raise RateLimitError(retry_after=retry_after) from exc

                delay = compute_backoff_delay(
                    attempts,
                    retry_after,
                    base_delay=self._backoff_base_seconds,
                    max_delay=self._backoff_max_seconds,
                )
                attempts += 1
                logger.warning(
                    "slack_rate_limit_backoff",
                    action=action,
                    attempt=attempts,
                    retry_after_seconds=retry_after,
                    delay_seconds=delay,
                    context=context or {},
                )
                if cancel_check is not None:
                    cancel_check()
                await self._sleep(delay)
                if cancel_check is not None:
                    cancel_check()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "slack_transport_error",
                    action=action,
                    error=str(exc),
                    context=context or {},
                )
                raise SlackAPIError(f"{action} transport error: {exc}") from exc

    @staticmethod
    def _error_code(error: SlackApiError) -> str | None:
        response = getattr(error, "response", None)
        if response is None:
            return None
        try:
            code = response.get("error")
        except AttributeError:
            return None
        return str(code) if code else None

    @staticmethod
    def _is_rate_limited(error: SlackApiError, error_code: str | None) -> bool:
        if error_code == "ratelimited":
            return True
        response = getattr(error, "response", None)
        return getattr(response, "status_code", None) == HTTP_STATUS_TOO_MANY_REQUESTS

    @staticmethod
    def _retry_after_seconds(error: SlackApiError) -> float | None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None) or {}
        retry_after_str = headers.get("Retry-After") or headers.get("retry-after")
        if retry_after_str is None:
            return None
        try:
            return max(float(retry_after_str), 0.0)
        except (TypeError, ValueError):
            return None
