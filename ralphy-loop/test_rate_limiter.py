"""Tests for rate-limit wait extraction and the countdown."""

from unittest.mock import MagicMock

from rate_limiter import (
    DEFAULT_RATE_LIMIT_WAIT_MS,
    extract_wait_ms,
    format_wait_time,
    handle_rate_limit,
    wait_with_countdown,
)


# ---------------------------------------------------------------------------
# extract_wait_ms
# ---------------------------------------------------------------------------


def test_extract_try_again_in() -> None:
    assert extract_wait_ms("try again in 45 seconds") == 45000


def test_extract_other_phrasings() -> None:
    assert extract_wait_ms("Please wait 10 seconds") == 10000
    assert extract_wait_ms("30 seconds remaining until reset") == 30000
    assert extract_wait_ms("Retry after 7") == 7000
    assert extract_wait_ms("TRY AGAIN IN 1 SECOND") == 1000


def test_extract_no_timing_info() -> None:
    assert extract_wait_ms("no timing info") is None


def test_extract_zero_is_ignored() -> None:
    assert extract_wait_ms("try again in 0 seconds") is None


def test_extract_first_pattern_wins() -> None:
    assert extract_wait_ms("wait 5 seconds, or try again in 60 seconds") == 60000


# ---------------------------------------------------------------------------
# format_wait_time
# ---------------------------------------------------------------------------


def test_format_wait_time() -> None:
    assert format_wait_time(45000) == "45s"
    assert format_wait_time(120000) == "2m"
    assert format_wait_time(DEFAULT_RATE_LIMIT_WAIT_MS) == "5m"
    assert format_wait_time(95000) == "1m 35s"
    assert format_wait_time(1500) == "2s"


# ---------------------------------------------------------------------------
# wait_with_countdown
# ---------------------------------------------------------------------------


def test_countdown_ticks_including_initial_call() -> None:
    ticks: list[int] = []
    sleep = MagicMock()
    assert wait_with_countdown(3000, ticks.append, sleep=sleep) is True
    assert ticks == [3, 2, 1, 0]
    assert sleep.call_count == 3


def test_countdown_rounds_up_partial_seconds() -> None:
    ticks: list[int] = []
    wait_with_countdown(1200, ticks.append, sleep=MagicMock())
    assert ticks == [2, 1, 0]


def test_countdown_zero_wait() -> None:
    ticks: list[int] = []
    sleep = MagicMock()
    assert wait_with_countdown(0, ticks.append, sleep=sleep) is True
    assert ticks == [0]
    sleep.assert_not_called()


def test_countdown_cancelled_by_stop() -> None:
    ticks: list[int] = []
    checks = iter([False, False, True])
    sleep = MagicMock()
    completed = wait_with_countdown(10000, ticks.append, should_stop=lambda: next(checks), sleep=sleep)
    assert completed is False
    assert ticks == [10, 9, 8]
    assert sleep.call_count == 2


# ---------------------------------------------------------------------------
# handle_rate_limit
# ---------------------------------------------------------------------------


def test_handle_rate_limit_uses_extracted_wait() -> None:
    sleep = MagicMock()
    assert handle_rate_limit("429: try again in 4 seconds", sleep=sleep) is True
    assert sleep.call_count == 4


def test_handle_rate_limit_falls_back_to_default() -> None:
    sleep = MagicMock()
    handle_rate_limit("rate limit", default_wait_ms=2000, sleep=sleep)
    assert sleep.call_count == 2


def test_handle_rate_limit_interrupted() -> None:
    sleep = MagicMock()
    assert handle_rate_limit("rate limit", should_stop=lambda: True, sleep=sleep) is False
    sleep.assert_not_called()
