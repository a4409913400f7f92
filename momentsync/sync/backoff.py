"""
Exponential backoff with jitter for sync retries.

delay(n) = base * 2**(n-1), randomized by ±jitter, clamped to cap.
The sequence handed out by one Backoff instance never decreases, so
jitter near the cap cannot make a later retry fire sooner.
"""

import random
from typing import Optional


class Backoff:
    def __init__(
        self,
        base: float = 1.0,
        cap: float = 60.0,
        jitter: float = 0.25,
        rng: Optional[random.Random] = None,
    ):
        if base < 0 or cap < 0:
            raise ValueError("base and cap must be non-negative")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._attempt = 0
        self._last = 0.0

    @property
    def attempt(self) -> int:
        return self._attempt

    def raw_delay(self, attempt: int) -> float:
        """Un-jittered delay for the given 1-based attempt."""
        if attempt < 1:
            return 0.0
        # Avoid float overflow on large attempt counts
        exponent = min(attempt - 1, 62)
        return min(self.cap, self.base * (2 ** exponent))

    def next_delay(self, server_hint: Optional[float] = None) -> float:
        """Delay before the next retry. `server_hint` (e.g. Retry-After) is honored as a floor."""
        self._attempt += 1
        raw = self.raw_delay(self._attempt)
        spread = raw * self.jitter
        delay = raw + self._rng.uniform(-spread, spread)
        delay = min(self.cap, max(delay, self._last))
        if server_hint is not None:
            delay = max(delay, server_hint)
        self._last = delay
        return delay
