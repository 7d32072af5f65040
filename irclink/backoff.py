"""Reconnection delays: capped exponential backoff with jitter."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import random

import structlog

logger = structlog.get_logger()


class Backoff:
    """Compute successive reconnection delays.

    Delays grow by factor from base up to cap, with a random jitter of up to
    jitter × delay added. Within one streak of failures the delays never
    decrease, jitter notwithstanding; reset() starts a new streak, and is
    called once a connection registers successfully.
    """

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 300.0,
        factor: float = 2.0,
        jitter: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        if base <= 0 or cap < base or factor < 1 or jitter < 0:
            raise ValueError(f"Invalid backoff: base={base}, cap={cap}, factor={factor}, jitter={jitter}")
        self.base = base
        self.cap = cap
        self.factor = factor
        self.jitter = jitter
        self.rng = rng or random.SystemRandom()
        self.attempts = 0
        self.last = 0.0

    def next(self) -> float:
        """Return the delay before the next attempt."""
        raw = min(self.cap, self.base * self.factor ** min(self.attempts, 64))
        jittered = raw + self.rng.uniform(0, self.jitter * raw)
        self.last = min(self.cap, max(self.last, jittered))
        self.attempts += 1
        logger.debug("Backoff delay", attempt=self.attempts, delay=round(self.last, 3))
        return self.last

    def reset(self) -> None:
        """Start over from the base delay."""
        self.attempts = 0
        self.last = 0.0
