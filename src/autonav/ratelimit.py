"""Rate-limit and transient connection error detection.

The loop only ever sees error text, so everything here works on messages:
decide whether it is a rate limit, and if so how long to wait.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

MAX_WAIT_SECONDS = 4 * 60 * 60

# Exponential backoff, capped at MAX_WAIT_SECONDS
BACKOFF_DELAYS = (60, 300, 1800, 7200, MAX_WAIT_SECONDS)

CONNECTION_RETRY_DELAYS = (5, 15, 30, 60, 120)

_RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "limit reached",
    "you've hit your limit",
)

_RESETS_DATE_RE = re.compile(
    r"resets?\s+([A-Za-z]+\s+\d{1,2},?\s+\d{1,2}(?::\d{2})?\s*(?:am|pm)?)", re.IGNORECASE,
)
_RESETS_IN_RE = re.compile(
    r"resets?\s+in\s+(\d+)\s*(hours?|minutes?|mins?|hrs?|seconds?|secs?)", re.IGNORECASE,
)
_RETRY_AFTER_RE = re.compile(r"retry\s+after\s+(\d+)\s*(?:seconds?|secs?)?", re.IGNORECASE)
_ISO_RE = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?)")


@dataclass
class RateLimitInfo:
    is_rate_limited: bool
    reset_time: datetime | None = None
    reset_time_raw: str | None = None
    seconds_until_reset: int | None = None


def is_rate_limit_message(message: str) -> bool:
    lower = message.lower()
    return any(marker in lower for marker in _RATE_LIMIT_MARKERS)


def _parse_fuzzy_datetime(text: str, now: datetime) -> datetime | None:
    """Parse "Feb 4, 9pm" style times (local time, no year) as the next occurrence."""
    cleaned = re.sub(r"(\d)\s*(am|pm)", r"\1 \2", text.strip().replace(",", ""), flags=re.IGNORECASE)
    formats = ("%b %d %I %p", "%B %d %I %p", "%b %d %I:%M %p", "%B %d %I:%M %p", "%b %d %H:%M", "%B %d %H:%M")
    for fmt in formats:
        try:
            parsed = datetime.strptime(f"{cleaned} {now.year}", f"{fmt} %Y")
        except ValueError:
            continue
        if parsed < now:
            parsed = parsed.replace(year=now.year + 1)
        return parsed
    return None


def parse_rate_limit_error(message: str, now: datetime | None = None) -> RateLimitInfo:
    """Classify an error message and extract its reset time if present.

    Recognises "resets Feb 4, 9pm", "resets in 2 hours", "retry after 3600
    seconds" and ISO timestamps, tried in that order.
    """
    if not is_rate_limit_message(message):
        return RateLimitInfo(is_rate_limited=False)

    local_now = now or datetime.now()
    info = RateLimitInfo(is_rate_limited=True)

    m = _RESETS_DATE_RE.search(message)
    if m:
        parsed = _parse_fuzzy_datetime(m.group(1), local_now)
        if parsed is not None:
            info.reset_time = parsed
            info.reset_time_raw = m.group(1)
            info.seconds_until_reset = max(0, int((parsed - local_now).total_seconds()))
            return info

    m = _RESETS_IN_RE.search(message)
    if m:
        amount = int(m.group(1))
        unit = m.group(2).lower()
        seconds = amount
        if unit.startswith(("hour", "hr")):
            seconds = amount * 3600
        elif unit.startswith("min"):
            seconds = amount * 60
        info.seconds_until_reset = seconds
        info.reset_time = local_now + timedelta(seconds=seconds)
        info.reset_time_raw = f"in {amount} {unit}"
        return info

    m = _RETRY_AFTER_RE.search(message)
    if m:
        seconds = int(m.group(1))
        info.seconds_until_reset = seconds
        info.reset_time = local_now + timedelta(seconds=seconds)
        info.reset_time_raw = f"{seconds} seconds"
        return info

    m = _ISO_RE.search(message)
    if m:
        raw = m.group(1)
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return info
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        aware_now = now.astimezone(timezone.utc) if now is not None else datetime.now(timezone.utc)
        info.reset_time = parsed
        info.reset_time_raw = raw
        info.seconds_until_reset = max(0, int((parsed - aware_now).total_seconds()))

    return info


def backoff_delay(attempt: int) -> int:
    """Delay for a zero-based retry attempt; the last entry repeats."""
    return BACKOFF_DELAYS[min(attempt, len(BACKOFF_DELAYS) - 1)]


def connection_retry_delay(attempt: int) -> int:
    return CONNECTION_RETRY_DELAYS[min(attempt, len(CONNECTION_RETRY_DELAYS) - 1)]


def wait_seconds_for(info: RateLimitInfo, attempt: int) -> int:
    """Parsed reset time when known, else backoff; never above MAX_WAIT_SECONDS."""
    if info.seconds_until_reset is not None:
        return min(info.seconds_until_reset, MAX_WAIT_SECONDS)
    return backoff_delay(attempt)


def is_transient_connection_error(message: str) -> bool:
    lower = message.lower()
    return (
        "econnreset" in lower
        or "etimedout" in lower
        or "econnrefused" in lower
        or "epipe" in lower
        or "ehostunreach" in lower
        or "enetunreach" in lower
        or ("connection" in lower and "timeout" in lower)
        or "socket hang up" in lower
        or "apiconnectiontimeouterror" in lower
        or "apiconnectionerror" in lower
        or ("network" in lower and "error" in lower)
        or "fetch failed" in lower
        or "aborted" in lower
        # httpx transport errors
        or "connecterror" in lower
        or "readtimeout" in lower
        or "remoteprotocolerror" in lower
    )


def format_duration(seconds: int) -> str:
    """45 → "45s", 125 → "2m 5s", 3780 → "1h 3m"."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        mins, secs = divmod(seconds, 60)
        return f"{mins}m {secs}s" if secs else f"{mins}m"
    hours = seconds // 3600
    mins = (seconds % 3600) // 60
    return f"{hours}h {mins}m" if mins else f"{hours}h"
