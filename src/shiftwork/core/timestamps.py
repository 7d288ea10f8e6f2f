"""
UTC timestamp helpers (stdlib-only).

Timestamps are stored as naive UTC datetimes so that values read back from
SQLite (which drops tzinfo) compare cleanly with freshly generated ones.
"""

import uuid
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_uuid() -> str:
    """36-char UUID4 string used for token and execution identifiers."""
    return str(uuid.uuid4())


def seconds_since(moment: datetime | None, now: datetime | None = None) -> float | None:
    """Elapsed seconds between *moment* and *now* (``None`` if *moment* is unset)."""
    if moment is None:
        return None
    return ((now or utc_now()) - moment).total_seconds()
