"""Custom exception hierarchy for Slack ingestion.

Following error taxonomy: retryable, non-retryable, validation, rate-limit.
"""


class SlackIngestError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(SlackIngestError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(SlackIngestError):
    """Errors that should not be retried (validation, auth, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Malformed inbound envelope or invalid backfill configuration."""

    pass


class TransientExternalError(RetryableError):
    """Network failure or throttling while talking to an external API."""

    pass


class SlackAPIError(TransientExternalError):
    """Slack API communication errors."""

    pass


class RateLimitError(TransientExternalError):
    """API rate limit exceeded."""

    def __init__(self, retry_after: float | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class PermanentProcessingError(NonRetryableError):
    """A single item cannot be processed; siblings continue."""

    pass


class AccessDeniedError(NonRetryableError):
    """Channel is restricted and the credential lacks membership."""

    pass


class DuplicateMessageError(NonRetryableError):
    """Message with the same (external_id, channel_id) already stored."""

    def __init__(self, external_id: str, channel_id: str) -> None:
        self.external_id = external_id
        self.channel_id = channel_id
        super().__init__(
            f"Message {external_id} already exists in channel {channel_id}"
        )


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class BackfillCancelled(Exception):
    """Raised at a cancellation checkpoint once a backfill has been cancelled.

    Not part of the application error hierarchy: cancellation is a terminal
    outcome, not a failure.
    """

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__("Operation cancelled by user")
