"""Duration parsing for configuration values.

Accepts human-readable strings ("30s", "10m", "1h30m", "2d") and ISO-8601
durations ("PT30S", "PT10M", "P1D").
"""

import re

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_ISO_PATTERN = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$")
_HUMAN_PATTERN = re.compile(r"(\d+)\s*([smhd])")


class DurationParseError(ValueError):
    """Raised when a duration string cannot be parsed."""

    pass


def parse_duration(duration_str: str) -> int:
    """Parse a duration string to whole seconds.

    Raises:
        DurationParseError: If the string is empty, malformed or zero

    Examples:
        >>> parse_duration("10m")
        600
        >>> parse_duration("PT1H")
        3600
    """
    if not isinstance(duration_str, str):
        raise DurationParseError(f"Duration must be a string, got {type(duration_str).__name__}")

    text = duration_str.strip()
    if not text:
        raise DurationParseError("Duration string cannot be empty")

    if text.upper().startswith("P"):
        seconds = _parse_iso8601(text.upper())
    else:
        seconds = _parse_human(text.lower())

    if seconds == 0:
        raise DurationParseError(f"Duration cannot be zero: '{duration_str}'")
    return seconds


def _parse_iso8601(text: str) -> int:
    match = _ISO_PATTERN.match(text)
    if not match or text in ("P", "PT"):
        raise DurationParseError(
            f"Invalid ISO-8601 duration format: '{text}'. "
            "Expected format like 'P1D', 'PT1H30M', 'PT10M' or 'PT30S'"
        )
    days, hours, minutes, seconds = match.groups()
    return (
        int(days or 0) * _UNIT_SECONDS["d"]
        + int(hours or 0) * _UNIT_SECONDS["h"]
        + int(minutes or 0) * _UNIT_SECONDS["m"]
        + int(float(seconds or 0))
    )


def _parse_human(text: str) -> int:
    parts = _HUMAN_PATTERN.findall(text)
    if not parts:
        raise DurationParseError(
            f"Invalid duration format: '{text}'. "
            "Expected format like '30s', '10m', '1h', '2d' or combinations like '1h30m'"
        )

    # Reject leftovers such as "10x" or "5m later"
    if "".join(f"{num}{unit}" for num, unit in parts) != re.sub(r"\s+", "", text):
        raise DurationParseError(
            f"Invalid characters in duration: '{text}'. "
            "Use only digits and units: s, m, h, d"
        )

    return sum(int(num) * _UNIT_SECONDS[unit] for num, unit in parts)


def validate_duration_range(
    duration_seconds: int,
    min_seconds: int = 1,
    max_seconds: int = 7 * 86400,
    name: str = "Duration",
) -> None:
    """Ensure a parsed duration lies within ``[min_seconds, max_seconds]``.

    Raises:
        DurationParseError: If the duration is out of range
    """
    if duration_seconds < min_seconds:
        raise DurationParseError(
            f"{name} too short: {seconds_to_human_readable(duration_seconds)}. "
            f"Minimum is {seconds_to_human_readable(min_seconds)}."
        )
    if duration_seconds > max_seconds:
        raise DurationParseError(
            f"{name} too long: {seconds_to_human_readable(duration_seconds)}. "
            f"Maximum is {seconds_to_human_readable(max_seconds)}."
        )


def seconds_to_human_readable(seconds: int) -> str:
    """Render seconds as the largest whole unit, e.g. ``"10 minutes"``."""
    for unit_seconds, unit in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= unit_seconds:
            count = seconds // unit_seconds
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
