from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

# ASCII digits only; \d would also accept other scripts' decimal digits
_DIGITS = re.compile(r"[0-9]+")
_STRICT = re.compile(r"[0-9]+(?::[0-9]+){0,2}(?:\.[0-9]+)?")

# width of results.completion_time
MAX_COMPLETION_TIME_LENGTH = 32


def _split_seconds(segment: str) -> tuple[int, int]:
    whole, dot, fraction = segment.partition(".")
    if not _DIGITS.fullmatch(whole) or (dot and not _DIGITS.fullmatch(fraction)):
        raise ValueError(f"Invalid seconds segment {segment!r}")
    # sub-second part is always read as milliseconds: "5" -> 500, "4567" -> 456
    millis = int(fraction.ljust(3, "0")[:3]) if fraction else 0
    return int(whole), millis


def _parse_int(segment: str) -> int:
    if not _DIGITS.fullmatch(segment):
        raise ValueError(f"Invalid time segment {segment!r}")
    return int(segment)


def parse_completion_time_ms(value: str) -> int:
    """Convert ``HH:MM:SS[.fff]``, ``MM:SS[.fff]`` or ``SS[.fff]`` to milliseconds.

    Never raises: a malformed value is logged and counts as 0 so one bad entry
    cannot block ranking a whole category.
    """
    try:
        parts = (value or "").strip().split(":")
        if len(parts) > 3:
            raise ValueError("Too many segments")
        hours = minutes = 0
        if len(parts) == 3:
            hours, minutes = _parse_int(parts[0]), _parse_int(parts[1])
        elif len(parts) == 2:
            minutes = _parse_int(parts[0])
        seconds, millis = _split_seconds(parts[-1])
        return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis
    except ValueError as exc:
        logger.warning("Could not parse completion time %r: %s", value, exc)
        return 0


def is_valid_completion_time(value: str) -> bool:
    """Strict check for newly entered times (minutes/seconds below 60 under a larger unit)."""
    value = (value or "").strip()
    if len(value) > MAX_COMPLETION_TIME_LENGTH or not _STRICT.fullmatch(value):
        return False
    parts = value.split(":")
    for segment in parts[1:]:
        if int(segment.split(".")[0]) >= 60:
            return False
    return True


def format_ms(ms: int | None) -> str:
    if ms is None:
        return ""
    ms = int(ms)
    total_seconds, millis = divmod(ms, 1000)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"
    return f"{minutes:02d}:{secs:02d}.{millis:03d}"
