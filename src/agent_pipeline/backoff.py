"""Retry delays shared by the coordinator, the sync adapter and the GitHub client."""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff with full jitter.

    The delay before retry n (0-indexed) is drawn uniformly from
    [0, min(base_delay * 2**n, max_delay)], so concurrent writers that lost
    the same race spread out instead of colliding again.

    Attributes:
        base_delay: Delay ceiling in seconds for the first retry.
        max_delay: Upper bound in seconds for any delay.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        ceiling = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, ceiling)
