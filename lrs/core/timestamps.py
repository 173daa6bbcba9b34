from __future__ import annotations

import datetime


def utc_now_iso() -> str:
    """Current UTC time as ``2024-01-31T12:00:00.000Z``."""
    now = datetime.datetime.now(datetime.UTC)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime.datetime | None:
    """Parse an ISO-8601 timestamp; ``None`` for anything unparseable.

    Naive values are taken as UTC.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed
