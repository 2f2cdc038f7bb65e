"""Rate-limit snapshots parsed from upstream headers and usage-limit bodies."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

LOG = logging.getLogger(__name__)

STALE_AFTER_SECONDS = 15 * 60

_DURATION_RE = re.compile(r"(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


@dataclass(frozen=True)
class RateLimitWindow:
    used_percent: float
    window_minutes: int | None = None
    resets_at: int | None = None


@dataclass(frozen=True)
class CreditsSnapshot:
    has_credits: bool
    unlimited: bool
    balance: str | None = None


@dataclass(frozen=True)
class UsageLimitInfo:
    """Body of a `usage_limit_reached` error."""

    message: str
    plan_type: str | None = None
    resets_at: int | None = None
    resets_in_seconds: int | None = None

    def reset_epoch(self, now: float | None = None) -> float | None:
        if self.resets_at is not None:
            return float(self.resets_at)
        if self.resets_in_seconds is not None:
            return (time.time() if now is None else now) + self.resets_in_seconds
        return None


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Quota state of one provider as of `captured_at` (epoch seconds).

    Replaced wholesale for every response; never mutated.
    """

    remaining: int | None = None
    limit: int | None = None
    reset_at: float | None = None
    plan_type: str | None = None
    primary: RateLimitWindow | None = None
    secondary: RateLimitWindow | None = None
    credits: CreditsSnapshot | None = None
    captured_at: float = field(default_factory=time.time)

    def is_stale(self, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current - self.captured_at > STALE_AFTER_SECONDS


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _header_float(headers: Mapping[str, str], name: str) -> float | None:
    raw = _header(headers, name)
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return value


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    raw = _header(headers, name)
    if raw is None:
        return None
    match = re.match(r"^[+-]?\d+", raw)
    return int(match.group(0)) if match else None


def _header_bool(headers: Mapping[str, str], name: str) -> bool | None:
    raw = _header(headers, name)
    if raw is None:
        return None
    lowered = raw.lower()
    if lowered in {"true", "1"}:
        return True
    if lowered in {"false", "0"}:
        return False
    return None


def _parse_window(headers: Mapping[str, str], prefix: str) -> RateLimitWindow | None:
    used_percent = _header_float(headers, f"{prefix}-used-percent")
    if used_percent is None:
        return None
    window_minutes = _header_int(headers, f"{prefix}-window-minutes")
    resets_at = _header_int(headers, f"{prefix}-reset-at")
    if used_percent == 0 and window_minutes is None and resets_at is None:
        return None
    return RateLimitWindow(used_percent=used_percent, window_minutes=window_minutes, resets_at=resets_at)


def _parse_credits(headers: Mapping[str, str]) -> CreditsSnapshot | None:
    has_credits = _header_bool(headers, "x-codex-credits-has-credits")
    unlimited = _header_bool(headers, "x-codex-credits-unlimited")
    if has_credits is None or unlimited is None:
        return None
    return CreditsSnapshot(
        has_credits=has_credits,
        unlimited=unlimited,
        balance=_header(headers, "x-codex-credits-balance"),
    )


def _parse_reset(raw: str | None, now: float) -> float | None:
    """Interpret a reset header as seconds, a Go-style duration, or a timestamp."""
    if raw is None:
        return None
    try:
        return now + float(raw)
    except ValueError:
        pass
    parts = _DURATION_RE.findall(raw)
    if parts and "".join(value + unit for value, unit in parts) == raw:
        return now + sum(float(value) * _UNIT_SECONDS[unit] for value, unit in parts)
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        LOG.debug("unparseable rate-limit reset header value=%s", raw)
        return None


def parse_rate_limit_headers(headers: Mapping[str, str], *, now: float | None = None) -> RateLimitSnapshot | None:
    """Build a snapshot from response headers, or None when none are present.

    Understands the coding backend's `x-codex-*` windows and credits as well as
    the generic `x-ratelimit-*-requests` and `anthropic-ratelimit-requests-*`
    families.
    """
    captured_at = time.time() if now is None else now
    primary = _parse_window(headers, "x-codex-primary")
    secondary = _parse_window(headers, "x-codex-secondary")
    credits = _parse_credits(headers)

    limit = _header_int(headers, "x-ratelimit-limit-requests")
    remaining = _header_int(headers, "x-ratelimit-remaining-requests")
    reset_at = _parse_reset(_header(headers, "x-ratelimit-reset-requests"), captured_at)
    if limit is None and remaining is None:
        limit = _header_int(headers, "anthropic-ratelimit-requests-limit")
        remaining = _header_int(headers, "anthropic-ratelimit-requests-remaining")
        reset_at = _parse_reset(_header(headers, "anthropic-ratelimit-requests-reset"), captured_at)

    if reset_at is None:
        resets = [window.resets_at for window in (primary, secondary) if window and window.resets_at]
        if resets:
            reset_at = float(min(resets))

    if primary is None and secondary is None and credits is None and limit is None and remaining is None:
        return None

    snapshot = RateLimitSnapshot(
        remaining=remaining,
        limit=limit,
        reset_at=reset_at,
        primary=primary,
        secondary=secondary,
        credits=credits,
        captured_at=captured_at,
    )
    LOG.debug(
        "rate limit snapshot primary=%s secondary=%s remaining=%s limit=%s credits=%s",
        primary.used_percent if primary else None,
        secondary.used_percent if secondary else None,
        remaining,
        limit,
        credits.balance if credits else None,
    )
    return snapshot


def parse_usage_limit_error(body: str | bytes | None) -> UsageLimitInfo | None:
    """Return usage-limit details when `body` is a `usage_limit_reached` error."""
    if not body:
        return None
    try:
        parsed: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    error = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(error, dict) or error.get("type") != "usage_limit_reached":
        return None

    def _int_or_none(value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return int(value)
        return None

    plan_type = error.get("plan_type")
    return UsageLimitInfo(
        message=str(error.get("message") or "usage limit reached"),
        plan_type=plan_type if isinstance(plan_type, str) else None,
        resets_at=_int_or_none(error.get("resets_at")),
        resets_in_seconds=_int_or_none(error.get("resets_in_seconds")),
    )


def snapshot_from_usage_limit(info: UsageLimitInfo, *, now: float | None = None) -> RateLimitSnapshot:
    captured_at = time.time() if now is None else now
    return RateLimitSnapshot(
        remaining=0,
        reset_at=info.reset_epoch(captured_at),
        plan_type=info.plan_type,
        captured_at=captured_at,
    )


def format_reset_time(resets_at: float | None, *, now: float | None = None) -> str:
    """Render a reset timestamp as a short relative duration like `2h 5m`."""
    if resets_at is None:
        return "unknown"
    current = time.time() if now is None else now
    diff = resets_at - current
    if diff <= 0:
        return "now"
    hours = int(diff // 3600)
    minutes = int((diff % 3600) // 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_window_duration(minutes: int | None) -> str:
    if not minutes:
        return "5h"
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    days = hours // 24
    if days == 7:
        return "Weekly"
    return f"{days}d"


def format_credit_balance(raw: str | None) -> str | None:
    """Render a credit balance as a positive whole number, or None."""
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    if value <= 0:
        return None
    return str(int(value + 0.5))


def format_rate_limit_summary(snapshot: RateLimitSnapshot | None) -> str:
    """One-line summary such as `5h: 75% left | Weekly: 40% left | Credits: 12`."""
    if snapshot is None:
        return ""
    parts: list[str] = []
    for window in (snapshot.primary, snapshot.secondary):
        if window is None:
            continue
        parts.append(f"{format_window_duration(window.window_minutes)}: {100 - window.used_percent:.0f}% left")
    if snapshot.credits is not None:
        if snapshot.credits.unlimited:
            parts.append("Credits: Unlimited")
        else:
            balance = format_credit_balance(snapshot.credits.balance)
            if balance:
                parts.append(f"Credits: {balance}")
    if not parts and snapshot.remaining is not None:
        if snapshot.limit is not None:
            parts.append(f"Requests: {snapshot.remaining}/{snapshot.limit} left")
        else:
            parts.append(f"Requests: {snapshot.remaining} left")
    return " | ".join(parts)


def render_progress_bar(percent_used: float, segments: int = 20) -> str:
    """Draw remaining quota as a bar of filled and empty segments."""
    ratio = max(0.0, min(1.0, (100 - percent_used) / 100))
    filled = int(ratio * segments + 0.5)
    return "[" + "█" * filled + "░" * (segments - filled) + "]"
