from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass
class BackoffCalculator:
    """Jittered exponential backoff, capped at ``max_delay_ms``.

    A positive server ``retry-after`` hint wins over the exponential curve and
    is applied without jitter.
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_factor: float = 0.3
    rng: random.Random = field(default_factory=random.Random)

    def delay_ms(self, attempt: int, retry_after_seconds: int | None = None) -> int:
        if retry_after_seconds is not None and retry_after_seconds > 0:
            return int(min(retry_after_seconds * 1000, self.max_delay_ms))

        exponential = self.base_delay_ms * (2 ** max(0, attempt))
        capped = min(exponential, self.max_delay_ms)
        jitter = capped * self.jitter_factor * self.rng.random()
        return int(capped + jitter)
