"""Duration strings such as ``1m0s`` or ``1.5h``, read and written."""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation

__all__ = ["format_duration", "parse_duration"]

_NANOSECOND = 1
_MICROSECOND = 1_000
_MILLISECOND = 1_000_000
_SECOND = 1_000_000_000
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE

_MAX_NANOSECONDS = 2**63 - 1

_UNITS = {
    "ns": _NANOSECOND,
    "us": _MICROSECOND,
    "\u00b5s": _MICROSECOND,
    "\u03bcs": _MICROSECOND,
    "ms": _MILLISECOND,
    "s": _SECOND,
    "m": _MINUTE,
    "h": _HOUR,
}

_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")


def _scaled(value: int, unit: int) -> str:
    """Write ``value / unit`` with trailing zeros of the fraction removed."""
    whole, rest = divmod(value, unit)
    if not rest:
        return str(whole)
    width = len(str(unit)) - 1
    return f"{whole}.{str(rest).zfill(width).rstrip('0')}"


def format_duration(seconds: float | int | timedelta) -> str:
    """Format a duration in seconds the way ``1h2m3.5s`` strings are written."""
    if isinstance(seconds, timedelta):
        seconds = seconds.total_seconds()
    total = round(seconds * _SECOND)
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < _MICROSECOND:
        return f"{sign}{total}ns"
    if total < _MILLISECOND:
        return f"{sign}{_scaled(total, _MICROSECOND)}\u00b5s"
    if total < _SECOND:
        return f"{sign}{_scaled(total, _MILLISECOND)}ms"
    hours, rest = divmod(total, _HOUR)
    minutes, rest = divmod(rest, _MINUTE)
    secs = f"{_scaled(rest, _SECOND)}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}"
    if minutes:
        return f"{sign}{minutes}m{secs}"
    return f"{sign}{secs}"


def parse_duration(text: str) -> float:
    """Parse a duration string such as ``300ms`` or ``2h45m`` into seconds.

    Raises ValueError for malformed or out-of-range durations.
    """
    if not isinstance(text, str):
        raise TypeError(f"duration must be a string, not {type(text).__name__}")
    body = text
    sign = 1
    if body and body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise ValueError(f"invalid duration {text!r}")

    total = Decimal(0)
    pos = 0
    while pos < len(body):
        match = _PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation:
            raise ValueError(f"invalid duration {text!r}") from None
        total += amount * _UNITS[match.group(2)]
        pos = match.end()

    nanoseconds = int(total)
    limit = _MAX_NANOSECONDS + (1 if sign < 0 else 0)
    if nanoseconds > limit:
        raise ValueError(f"invalid duration {text!r}")
    return sign * nanoseconds / _SECOND