from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock returning timezone-aware UTC with millisecond precision."""

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        return current.replace(microsecond=(current.microsecond // 1000) * 1000)
