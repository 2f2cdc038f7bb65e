from datetime import datetime, timezone

from streamkoppler.rate_limits import (
    CreditsSnapshot,
    RateLimitSnapshot,
    RateLimitWindow,
    format_credit_balance,
    format_rate_limit_summary,
    format_reset_time,
    format_window_duration,
    parse_rate_limit_headers,
    parse_usage_limit_error,
    render_progress_bar,
    snapshot_from_usage_limit,
)


def test_codex_headers_produce_windows_and_credits() -> None:
    headers = {
        "x-codex-primary-used-percent": "25",
        "x-codex-primary-window-minutes": "300",
        "x-codex-primary-reset-at": "2000",
        "x-codex-secondary-used-percent": "60.5",
        "x-codex-secondary-window-minutes": "10080",
        "x-codex-secondary-reset-at": "9000",
        "x-codex-credits-has-credits": "true",
        "x-codex-credits-unlimited": "false",
        "x-codex-credits-balance": "11.6",
    }
    snapshot = parse_rate_limit_headers(headers, now=1000.0)

    assert snapshot is not None
    assert snapshot.primary == RateLimitWindow(used_percent=25.0, window_minutes=300, resets_at=2000)
    assert snapshot.secondary.used_percent == 60.5
    assert snapshot.credits == CreditsSnapshot(has_credits=True, unlimited=False, balance="11.6")
    assert snapshot.reset_at == 2000.0
    assert snapshot.captured_at == 1000.0


def test_generic_headers_accept_go_style_durations() -> None:
    headers = {
        "x-ratelimit-limit-requests": "100",
        "x-ratelimit-remaining-requests": "42",
        "x-ratelimit-reset-requests": "1m30s",
    }
    snapshot = parse_rate_limit_headers(headers, now=1000.0)
    assert (snapshot.limit, snapshot.remaining, snapshot.reset_at) == (100, 42, 1090.0)


def test_generic_reset_in_plain_seconds() -> None:
    headers = {"x-ratelimit-remaining-requests": "1", "x-ratelimit-reset-requests": "7.5"}
    assert parse_rate_limit_headers(headers, now=10.0).reset_at == 17.5


def test_anthropic_headers_with_timestamp_reset() -> None:
    headers = {
        "anthropic-ratelimit-requests-limit": "50",
        "anthropic-ratelimit-requests-remaining": "49",
        "anthropic-ratelimit-requests-reset": "2026-01-01T00:00:00Z",
    }
    snapshot = parse_rate_limit_headers(headers, now=0.0)
    assert snapshot.remaining == 49
    assert snapshot.reset_at == datetime(2026, 1, 1, tzinfo=timezone.utc).timestamp()


def test_missing_or_empty_windows_yield_no_snapshot() -> None:
    assert parse_rate_limit_headers({}) is None
    assert parse_rate_limit_headers({"x-codex-primary-used-percent": "0"}) is None
    assert parse_rate_limit_headers({"x-codex-primary-used-percent": "nan"}) is None


def test_usage_limit_body_is_recognised() -> None:
    body = (
        '{"error": {"type": "usage_limit_reached", "message": "You hit your limit",'
        ' "plan_type": "plus", "resets_in_seconds": 3600}}'
    )
    info = parse_usage_limit_error(body)
    assert info.message == "You hit your limit"
    assert info.plan_type == "plus"
    assert info.reset_epoch(now=100.0) == 3700.0

    snapshot = snapshot_from_usage_limit(info, now=100.0)
    assert snapshot.remaining == 0
    assert snapshot.reset_at == 3700.0
    assert snapshot.plan_type == "plus"


def test_other_bodies_are_not_usage_limits() -> None:
    assert parse_usage_limit_error(None) is None
    assert parse_usage_limit_error("not json") is None
    assert parse_usage_limit_error('{"error": {"type": "invalid_request_error"}}') is None
    assert parse_usage_limit_error('["usage_limit_reached"]') is None
    info = parse_usage_limit_error('{"error": {"type": "usage_limit_reached", "resets_at": true}}')
    assert info.resets_at is None
    assert info.message == "usage limit reached"


def test_format_reset_time() -> None:
    assert format_reset_time(None) == "unknown"
    assert format_reset_time(99.0, now=100.0) == "now"
    assert format_reset_time(100.0 + 300, now=100.0) == "5m"
    assert format_reset_time(100.0 + 7500, now=100.0) == "2h 5m"


def test_format_window_duration() -> None:
    assert format_window_duration(None) == "5h"
    assert format_window_duration(45) == "45m"
    assert format_window_duration(300) == "5h"
    assert format_window_duration(10080) == "Weekly"
    assert format_window_duration(2880) == "2d"


def test_format_credit_balance() -> None:
    assert format_credit_balance("11.6") == "12"
    assert format_credit_balance("3.4") == "3"
    assert format_credit_balance("0") is None
    assert format_credit_balance("abc") is None
    assert format_credit_balance("  ") is None


def test_summary_lists_windows_then_credits() -> None:
    snapshot = RateLimitSnapshot(
        primary=RateLimitWindow(used_percent=25, window_minutes=300),
        secondary=RateLimitWindow(used_percent=60, window_minutes=10080),
        credits=CreditsSnapshot(has_credits=True, unlimited=False, balance="11.6"),
    )
    assert format_rate_limit_summary(snapshot) == "5h: 75% left | Weekly: 40% left | Credits: 12"


def test_summary_falls_back_to_request_counts() -> None:
    assert format_rate_limit_summary(RateLimitSnapshot(remaining=42, limit=100)) == "Requests: 42/100 left"
    assert format_rate_limit_summary(RateLimitSnapshot(remaining=3)) == "Requests: 3 left"
    assert format_rate_limit_summary(None) == ""
    unlimited = RateLimitSnapshot(credits=CreditsSnapshot(has_credits=True, unlimited=True))
    assert format_rate_limit_summary(unlimited) == "Credits: Unlimited"


def test_progress_bar_shows_remaining_share() -> None:
    assert render_progress_bar(25) == "[" + "█" * 15 + "░" * 5 + "]"
    assert render_progress_bar(150) == "[" + "░" * 20 + "]"
    assert render_progress_bar(0, segments=4) == "[████]"


def test_snapshot_goes_stale_after_fifteen_minutes() -> None:
    snapshot = RateLimitSnapshot(captured_at=0.0)
    assert not snapshot.is_stale(now=900.0)
    assert snapshot.is_stale(now=901.0)
