"""Outbound flood control: a token bucket."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable


class TokenBucket:
    """Token bucket: bursts of up to capacity messages, then rate messages per second.

    The bucket starts full. Tokens are refilled lazily, based on the time
    elapsed since the previous refill, as given by clock.
    """

    def __init__(self, capacity: int, rate: float, clock: Callable[[], float] = time.monotonic) -> None:
        if capacity < 1 or rate <= 0:
            raise ValueError(f"Invalid token bucket: capacity={capacity}, rate={rate}")
        self.capacity = capacity
        self.rate = rate
        self.clock = clock
        self.tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(now - self._last_refill, 0.0)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self._last_refill = now

    def delay(self) -> float:
        """Return the seconds to wait until a token is available; 0 if one is available now."""
        self._refill()
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.rate

    def consume(self) -> bool:
        """Take a token if one is available; return whether it was taken."""
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    async def wait(self) -> None:
        """Wait until a token is available, and take it."""
        while not self.consume():
            await asyncio.sleep(self.delay())
