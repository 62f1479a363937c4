"""Parsing of human readable duration strings such as ``"30s"`` or ``"1h30m"``."""
from __future__ import annotations

import math
import re
from datetime import timedelta


class DurationParseError(ValueError):
    """Raised when a duration string cannot be interpreted."""


_UNIT_SECONDS: dict[str, float] = {
    "ms": 0.001,
    "msec": 0.001,
    "msecs": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}

_TERM = re.compile(r"\s*(?P<value>\d+(?:\.\d+)?|\.\d+)\s*(?P<unit>[a-zA-Z]+)?\s*")


def parse_duration(value: object) -> timedelta:
    """Return a :class:`timedelta` for *value*.

    Accepts compound strings (``"1h 30m"``, ``"2m30s"``, ``"250ms"``), bare
    numbers interpreted as seconds, and existing :class:`timedelta` objects.
    Negative or unparsable values raise :class:`DurationParseError`.
    """

    if isinstance(value, timedelta):
        if value < timedelta(0):
            raise DurationParseError("Durations must not be negative")
        return value
    if isinstance(value, bool):
        raise DurationParseError(f"Invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if not math.isfinite(seconds) or seconds < 0:
            raise DurationParseError(f"Invalid duration {value!r}")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise DurationParseError(f"Invalid duration {value!r}")

    text = value.strip().lower()
    if not text:
        raise DurationParseError("Duration must not be empty")
    if text.startswith("-"):
        raise DurationParseError("Durations must not be negative")

    total = 0.0
    position = 0
    bare_number_seen = False
    while position < len(text):
        match = _TERM.match(text, position)
        if match is None or match.end() == position:
            raise DurationParseError(f"Unable to parse duration {value!r}")
        unit = match.group("unit")
        if unit is None:
            # A unit-less number is only valid on its own ("15" == 15 seconds).
            if bare_number_seen or position != 0 or match.end() != len(text):
                raise DurationParseError(f"Unable to parse duration {value!r}")
            bare_number_seen = True
            scale = 1.0
        else:
            scale = _UNIT_SECONDS.get(unit)
            if scale is None:
                raise DurationParseError(f"Unknown duration unit {unit!r} in {value!r}")
        total += float(match.group("value")) * scale
        position = match.end()

    if not math.isfinite(total):
        raise DurationParseError(f"Invalid duration {value!r}")
    return timedelta(seconds=total)


def format_duration(value: timedelta) -> str:
    """Render *value* in the compact form understood by :func:`parse_duration`."""

    total_ms = int(round(value.total_seconds() * 1000))
    if total_ms == 0:
        return "0s"
    seconds, millis = divmod(total_ms, 1000)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    if millis:
        parts.append(f"{millis}ms")
    return "".join(parts)


__all__ = ["DurationParseError", "format_duration", "parse_duration"]
