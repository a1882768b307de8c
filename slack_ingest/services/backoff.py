"""Retry delay computation for Slack API calls."""

from typing import Final

DEFAULT_BASE_DELAY_SECONDS: Final[float] = 1.0
DEFAULT_MAX_DELAY_SECONDS: Final[float] = 30.0


def compute_backoff_delay(
    attempt: int,
    retry_after: float | None = None,
    *,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
) -> float:
    """Return the delay before retrying a throttled or failed request.

    An explicit server hint (``Retry-After``) always wins over the computed
    default. Otherwise the delay is ``base_delay * 2**attempt`` capped at
    ``max_delay``.

    Args:
        attempt: Zero-based retry attempt number
        retry_after: Seconds-to-wait supplied by the server, if any
        base_delay: Delay for the first retry
        max_delay: Upper bound for computed delays

    Returns:
        Delay in seconds

    Example:
        >>> compute_backoff_delay(0)
        1.0
        >>> compute_backoff_delay(3)
        8.0
        >>> compute_backoff_delay(10)
        30.0
        >>> compute_backoff_delay(10, retry_after=45)
        45.0
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")

    if retry_after is not None and retry_after >= 0:
        return float(retry_after)

    # Cap the exponent so large attempt counts cannot overflow the float.
    exponent = min(attempt, 32)
    return float(min(base_delay * (2**exponent), max_delay))


__all__ = ["compute_backoff_delay"]
