"""Bounded retry with a fixed delay between attempts."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    tries: int
    delay: float  # seconds

    @property
    def bound(self) -> float:
        """Worst-case time spent sleeping, in seconds."""
        return self.tries * self.delay

    def attempts(self) -> Iterator[int]:
        """Yield 1-based attempt numbers, sleeping ``delay`` between them."""
        for attempt in range(1, self.tries + 1):
            if attempt > 1:
                time.sleep(self.delay)
            yield attempt

    def poll(self, probe: Callable[[int], Optional[T]]) -> Optional[T]:
        """Call ``probe`` until it returns something other than None."""
        for attempt in self.attempts():
            value = probe(attempt)
            if value is not None:
                return value
        return None
