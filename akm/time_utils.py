"""Utilities for working with timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

# Formats written by older releases, tried after ``datetime.fromisoformat``.
_LEGACY_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse RFC 3339 and Python ``datetime`` text into a UTC ``datetime``.

    Older releases wrote nanosecond precision with trailing zeros trimmed and
    a trailing ``Z``; Python writes microseconds and ``+00:00``, sometimes
    with a space separator.  Fractions are cut or zero-padded to six digits
    before parsing.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    cleaned = value.strip()
    if not cleaned or cleaned == "null":
        return None
    if cleaned.endswith(("Z", "z")):
        cleaned = cleaned[:-1] + "+00:00"
    cleaned = _normalize_fraction(cleaned)
    try:
        return ensure_utc(datetime.fromisoformat(cleaned))
    except ValueError:
        pass
    for fmt in _LEGACY_FORMATS:
        try:
            return ensure_utc(datetime.strptime(cleaned, fmt))
        except ValueError:
            continue
    raise ValueError(f"unrecognised timestamp: {value!r}")


def _normalize_fraction(text: str) -> str:
    # fromisoformat before 3.11 only takes exactly three or six digits.
    dot = text.find(".")
    if dot == -1:
        return text
    end = dot + 1
    while end < len(text) and text[end].isdigit():
        end += 1
    digits = text[dot + 1 : end]
    if not digits or len(digits) == 6:
        return text
    return text[: dot + 1] + digits[:6].ljust(6, "0") + text[end:]


def isoformat(dt: datetime) -> str:
    """Return ``dt`` as ISO-8601 text in UTC."""

    return ensure_utc(dt).isoformat()


__all__ = ["utc_now", "ensure_utc", "parse_timestamp", "isoformat"]
