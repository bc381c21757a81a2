"""Duration formatting helpers shared by the API, the client and the draft timer."""

from __future__ import annotations

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE


def format_duration(ms: int) -> str:
    """Format milliseconds as ``H:MM:SS``.

    Hours are not padded, minutes and seconds always are. Sub-second
    remainders are truncated. Negative input must be clamped by the caller.
    """
    if ms < 0:
        raise ValueError("Duration must be >= 0")
    total_seconds = int(ms) // MS_PER_SECOND
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def format_hours_minutes(ms: int) -> str:
    """Format milliseconds as ``HHh : MMm`` (seconds dropped)."""
    total_minutes = max(0, int(ms)) // MS_PER_MINUTE
    return f"{total_minutes // 60:02d}h : {total_minutes % 60:02d}m"


def format_minutes(total_minutes: int) -> str:
    total = max(0, int(total_minutes))
    return f"{total // 60}h {total % 60}m"


def parse_duration(text: str) -> int:
    """Parse ``H:MM:SS`` or ``MM:SS`` back into milliseconds."""
    parts = text.strip().split(":")
    if len(parts) not in (2, 3) or not all(part.isdigit() for part in parts):
        raise ValueError(f"Invalid duration: {text!r}")
    numbers = [int(part) for part in parts]
    if len(numbers) == 2:
        numbers.insert(0, 0)
    hours, minutes, seconds = numbers
    if minutes >= 60 or seconds >= 60:
        raise ValueError(f"Invalid duration: {text!r}")
    return ((hours * 60 + minutes) * 60 + seconds) * MS_PER_SECOND


def minutes_to_ms(minutes: float) -> int:
    return int(round(minutes * MS_PER_MINUTE))


def seconds_to_ms(seconds: float) -> int:
    return int(round(seconds * MS_PER_SECOND))
