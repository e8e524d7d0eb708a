from __future__ import annotations

import re

MS_PER_SECOND = 1000
MS_PER_HOUR = 60 * 60 * MS_PER_SECOND
MS_PER_DAY = 24 * MS_PER_HOUR
MS_PER_WEEK = 7 * MS_PER_DAY
MS_PER_MONTH = 30 * MS_PER_DAY
MS_PER_YEAR = 365 * MS_PER_DAY

# Months and years are calendar-agnostic approximations.
_DURATION_PATTERNS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"^(\d+)\s*(?:weeks?|w)$"), MS_PER_WEEK),
    (re.compile(r"^(\d+)\s*(?:days?|d)$"), MS_PER_DAY),
    (re.compile(r"^(\d+)\s*(?:months?|mo)$"), MS_PER_MONTH),
    (re.compile(r"^(\d+)\s*(?:years?|y)$"), MS_PER_YEAR),
)

_FORMAT_UNITS: tuple[tuple[int, str, str], ...] = (
    (MS_PER_YEAR, "year", "years"),
    (MS_PER_MONTH, "month", "months"),
    (MS_PER_WEEK, "week", "weeks"),
    (MS_PER_DAY, "day", "days"),
)


def parse_duration_ms(value: str | None) -> int | None:
    """Parse strings like "2 weeks", "14d" or "1mo" into milliseconds.

    Returns None for anything unparseable or non-positive.
    """
    if value is None:
        return None
    normalized = str(value).strip().lower()
    for pattern, multiplier in _DURATION_PATTERNS:
        match = pattern.match(normalized)
        if match is None:
            continue
        amount = int(match.group(1))
        if amount <= 0:
            return None
        return amount * multiplier
    return None


def is_valid_duration(value: str | None) -> bool:
    return parse_duration_ms(value) is not None


def format_duration_ms(duration_ms: int | float) -> str:
    if duration_ms < 0:
        return "0 days"

    remaining = int(duration_ms)
    parts: list[str] = []
    for unit_ms, singular, plural in _FORMAT_UNITS:
        amount = remaining // unit_ms
        if amount <= 0:
            continue
        parts.append(f"{amount} {singular if amount == 1 else plural}")
        remaining %= unit_ms

    if not parts:
        return "0 days"
    return " ".join(parts)


def format_clock_ms(duration_ms: int | float) -> str:
    total_seconds = max(0, int(duration_ms) // MS_PER_SECOND)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"
