"""Time utilities for the runtime package.

Flow bookkeeping (completed steps, step start times, flow start) is stored as
epoch milliseconds so that it survives JSON persistence unchanged.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _datetime_to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO format string with Z suffix."""
    if dt is None:
        return None
    iso = dt.astimezone(timezone.utc).replace(tzinfo=None).isoformat()
    return iso + "Z"
