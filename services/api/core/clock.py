"""Millisecond clocks used to stamp local mutations."""
from __future__ import annotations

import threading
import time
from datetime import datetime, timezone


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def parse_timestamp(value) -> int | None:
    """Accept epoch ms, datetime or ISO-8601 text; return epoch ms."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return to_ms(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_ms(datetime.fromisoformat(text))


class MonotonicClock:
    """
    Wall clock in epoch milliseconds that never returns the same value twice
    and never goes backwards, even if the system clock is adjusted.
    """

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def wall_ms(self) -> int:
        return int(time.time() * 1000)

    def now_ms(self) -> int:
        with self._lock:
            now = self.wall_ms()
            if now <= self._last:
                now = self._last + 1
            self._last = now
            return now

    def now(self) -> datetime:
        return from_ms(self.now_ms())
