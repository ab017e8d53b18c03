from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current UTC time as a naive datetime; every stored timestamp uses this."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def current_year() -> int:
    """Year used for REQ-<year>-<seq> numbering."""
    return utcnow().year


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Wire format for timestamps: second precision with a trailing 'Z'.

    Naive values are already UTC. Aware values are converted first.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat() + "Z"
