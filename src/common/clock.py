from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


class ManualClock:
    """Deterministic clock for tests. Every read advances by ``step`` ms."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 0):
        self.current = start
        self.step = step

    def now_ms(self) -> int:
        value = self.current
        self.current += self.step
        return value

    def advance(self, ms: int) -> None:
        self.current += ms
