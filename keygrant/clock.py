from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def now_ms(self) -> float: ...


class SystemClock:
    """Wall clock in timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_ms(self) -> float:
        return time.time() * 1000


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)
