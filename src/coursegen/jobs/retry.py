"""Bounded exponential backoff with full jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(slots=True)
class RetryPolicy:
    """Delay before retry ``n`` is uniform in ``[0, min(max, base * 2**(n-1))]``."""

    base_seconds: float = 30.0
    max_seconds: float = 900.0
    jitter: bool = True
    _random: random.Random = field(default_factory=random.Random, repr=False)

    def delay_for(self, retry_number: int) -> float:
        max_delay = min(
            self.max_seconds,
            self.base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        if not self.jitter:
            return max_delay
        return self._random.uniform(0, max_delay)
