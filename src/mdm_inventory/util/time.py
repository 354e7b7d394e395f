from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_utc(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp (accepting a trailing Z) into an aware UTC datetime.
    Returns None for empty or malformed input.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    # Graph emits 7 fractional digits; fromisoformat accepts at most 6 on older interpreters.
    if "." in raw:
        head, _, rest = raw.partition(".")
        frac = ""
        tz = ""
        for i, ch in enumerate(rest):
            if not ch.isdigit():
                frac, tz = rest[:i], rest[i:]
                break
        else:
            frac = rest
        raw = f"{head}.{frac[:6]}{tz}" if frac else f"{head}{tz}"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
