import pytest

from slack_ingest.services.backoff import compute_backoff_delay


@pytest.mark.parametrize(
    ("attempt", "expected"),
    [(0, 1.0), (1, 2.0), (3, 8.0), (5, 30.0), (500, 30.0)],
)
def test_exponential_delay_is_capped(attempt: int, expected: float) -> None:
    assert compute_backoff_delay(attempt) == expected


def test_retry_after_wins_even_above_cap() -> None:
    assert compute_backoff_delay(0, retry_after=45) == 45.0
    assert compute_backoff_delay(4, retry_after=0) == 0.0


def test_negative_retry_after_is_ignored() -> None:
    assert compute_backoff_delay(2, retry_after=-1) == 4.0


def test_custom_base_and_cap() -> None:
    assert compute_backoff_delay(2, base_delay=0.25, max_delay=0.5) == 0.5
    assert compute_backoff_delay(1, base_delay=0.25) == 0.5


def test_negative_attempt_rejected() -> None:
    with pytest.raises(ValueError):
        compute_backoff_delay(-1)
