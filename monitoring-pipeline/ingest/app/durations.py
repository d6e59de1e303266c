# ingest/app/durations.py
"""Parse Go-style duration strings such as ``1h``, ``30s``, ``1h30m`` or ``250ms``."""

import re
from datetime import timedelta
from typing import Optional

from .errors import InvalidDuration

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

# int64 nanoseconds, roughly 2562047h47m16.854s
MAX_SECONDS = (2 ** 63 - 1) / 1e9


def parse_duration(text: str, message: Optional[str] = None) -> timedelta:
    """Parse ``text`` into a positive timedelta, raising ``InvalidDuration`` otherwise.

    ``message`` replaces the public error message, so callers can say which
    parameter was wrong.
    """
    value = (text or "").strip()
    if not value:
        raise InvalidDuration(f"empty duration {text!r}", message=message)

    seconds = 0.0
    pos = 0
    for match in _PART.finditer(value):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise InvalidDuration(f"invalid duration {text!r}", message=message)
    if seconds <= 0:
        raise InvalidDuration(f"duration must be positive, got {text!r}", message=message)
    if seconds > MAX_SECONDS:
        raise InvalidDuration(f"duration {text!r} out of range", message=message)
    try:
        result = timedelta(seconds=seconds)
    except OverflowError as e:
        raise InvalidDuration(f"duration {text!r} out of range", message=message) from e
    if not result:
        raise InvalidDuration(f"duration {text!r} is below microsecond resolution", message=message)
    return result
