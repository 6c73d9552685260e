"""Duration parsing for configuration values."""

import re

from querysync.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int:
    """Parse a duration ("30s", "5m") to milliseconds. Ints pass through."""
    if isinstance(duration, bool):
        raise TypeError(f"Invalid duration: {duration!r}")
    if isinstance(duration, int):
        if duration < 0:
            raise ValueError(f"Duration must not be negative: {duration!r}")
        return duration

    match = _DURATION_PATTERN.match(duration.strip())
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]


def parse_optional_duration(duration: Duration | None) -> int | None:
    """Like parse_duration, but None (or "never") means no limit."""
    if duration is None or duration == "never":
        return None
    return parse_duration(duration)
