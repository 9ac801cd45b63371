"""
Flexible field extraction from loosely-shaped JSON records.

Field names drift between tool versions, so every logical field is looked up
through an ordered list of candidate key paths. None of these helpers raise:
malformed or partial records are the common case and yield "absent"
(an empty string or ``None``) instead.
"""

import math
import os
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Tuple

Path = Sequence[str]

MICROS_THRESHOLD = 10 ** 15
MILLIS_THRESHOLD = 10 ** 12

_TIMESTAMP_LAYOUTS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
)


def path_value(root: Any, path: Path) -> Tuple[Any, bool]:
    """Walk nested mappings along ``path``.

    Returns:
        ``(value, True)`` when every segment exists, else ``(None, False)``
    """
    current = root
    for segment in path:
        if not isinstance(current, dict) or segment not in current:
            return None, False
        current = current[segment]
    return current, True


def _scalar_to_string(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return ""


def first_path_string(root: Any, *paths: Path) -> str:
    """Return the first non-empty scalar found along ``paths``, as a string."""
    for path in paths:
        value, found = path_value(root, path)
        if not found:
            continue
        text = _scalar_to_string(value)
        if text:
            return text
    return ""


def number_from_any(value: Any) -> Optional[float]:
    """Coerce ints, floats and numeric strings; anything else is absent."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def first_path_number(root: Any, *paths: Path) -> Optional[float]:
    """Return the first coercible number found along ``paths``."""
    for path in paths:
        value, found = path_value(root, path)
        if not found:
            continue
        number = number_from_any(value)
        if number is not None:
            return number
    return None


def to_int(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def unix_auto(value: float) -> datetime:
    """Convert an epoch value of unknown resolution to a UTC datetime.

    Values above 10^15 are microseconds, above 10^12 milliseconds, and
    seconds otherwise.
    """
    number = int(value)
    if number > MICROS_THRESHOLD:
        seconds = number / 1_000_000
    elif number > MILLIS_THRESHOLD:
        seconds = number / 1_000
    else:
        seconds = float(number)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_rfc3339(text: str) -> Optional[datetime]:
    candidate = text
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    if "T" not in candidate and "t" not in candidate:
        return None
    candidate = candidate.replace("t", "T")
    # fromisoformat before 3.11 accepts exactly 3 or 6 fractional digits
    head, sep, rest = candidate.partition(".")
    if sep:
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        tail = rest[len(digits):]
        candidate = head + "." + digits[:6].ljust(6, "0") + tail
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse RFC 3339, ``YYYY-MM-DD HH:MM:SS`` or an epoch value.

    Args:
        value: A string or a number

    Returns:
        A timezone-aware UTC datetime, or ``None`` if the value is not a
        recognizable timestamp
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return unix_auto(value)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    parsed = _parse_rfc3339(text)
    if parsed is not None:
        return _as_utc(parsed)

    for layout in _TIMESTAMP_LAYOUTS:
        try:
            return _as_utc(datetime.strptime(text, layout))
        except ValueError:
            continue

    if text.lstrip("-").isdigit():
        try:
            return unix_auto(int(text))
        except (OverflowError, OSError, ValueError):
            return None
    return None


def first_path_timestamp(root: Any, *paths: Path) -> Optional[datetime]:
    """Return the first parseable timestamp found along ``paths``."""
    for path in paths:
        value, found = path_value(root, path)
        if not found:
            continue
        parsed = parse_timestamp(value)
        if parsed is not None:
            return parsed
    return None


def first_non_empty(*values: Optional[str]) -> str:
    """First value that is non-blank after trimming, else ``""``."""
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def sanitize_workspace(cwd: str) -> str:
    """Reduce a working directory to its last path component."""
    cwd = (cwd or "").strip()
    if not cwd:
        return ""
    base = os.path.basename(cwd.rstrip("/\\"))
    return base or cwd


def expand_home(path: str) -> str:
    path = (path or "").strip()
    if not path:
        return ""
    return os.path.expanduser(path)
