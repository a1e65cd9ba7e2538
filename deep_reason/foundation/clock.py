"""Timezone-aware clock utilities.

All timestamps in deep-reason MUST be UTC-aware.  This module is the
single source of "now" so tests can monkey-patch it trivially, and the
stores accept an injected clock built on top of it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)
