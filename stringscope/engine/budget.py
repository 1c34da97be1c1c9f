"""
Time and memory budget for a single search batch.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

import psutil


# Slack left for persisting state after the governor trips.
TIME_MARGIN_SECONDS = 2.0
MEMORY_MARGIN_BYTES = 256 * 1024


def process_memory_bytes() -> int:
    return psutil.Process().memory_info().rss


@dataclass
class ResourceGovernor:
    """
    Answers "must this batch yield now?".

    Consulted at every loop boundary; there is no preemption. A time budget
    of 0 or less disables the time check, a memory limit of 0 disables the
    memory check.
    """

    time_budget: float
    memory_limit: int = 0
    clock: Callable[[], float] = time.monotonic
    memory_probe: Callable[[], int] = process_memory_bytes
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    @classmethod
    def disabled(cls) -> "ResourceGovernor":
        return cls(time_budget=0, memory_limit=0)

    def restart(self) -> None:
        self.started_at = self.clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def time_exhausted(self) -> bool:
        if self.time_budget <= 0:
            return False
        return self.elapsed >= (self.time_budget - TIME_MARGIN_SECONDS)

    def memory_exhausted(self) -> bool:
        if self.memory_limit <= 0:
            return False
        return (self.memory_probe() + MEMORY_MARGIN_BYTES) >= self.memory_limit

    def should_yield(self) -> bool:
        return self.time_exhausted() or self.memory_exhausted()
