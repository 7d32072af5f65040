"""Test the reconnection backoff."""

from __future__ import annotations

import random

import pytest

from irclink.backoff import Backoff


def test_no_jitter() -> None:
    """Test the exponential growth and its cap."""
    backoff = Backoff(base=1, cap=30, jitter=0)
    assert [backoff.next() for _ in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_jitter() -> None:
    """Test that delays stay within bounds and never decrease within a streak."""
    backoff = Backoff(base=1, cap=60, jitter=0.5, rng=random.Random(42))
    delays = [backoff.next() for _ in range(20)]
    assert delays == sorted(delays)
    assert 1 <= delays[0] <= 1.5
    assert all(delay <= 60 for delay in delays)
    assert delays[-1] == 60


def test_reset() -> None:
    """Test that reset() starts over from the base delay."""
    backoff = Backoff(base=2, cap=100, jitter=0)
    for _ in range(5):
        backoff.next()
    backoff.reset()
    assert backoff.attempts == 0
    assert backoff.next() == 2


def test_many_attempts() -> None:
    """Test that a long streak of failures does not overflow."""
    backoff = Backoff(base=1, cap=300, jitter=0.1)
    for _ in range(2000):
        delay = backoff.next()
    assert delay == 300


@pytest.mark.parametrize(
    "kwargs",
    [{"base": 0}, {"base": 10, "cap": 5}, {"factor": 0.5}, {"jitter": -1}],
)
def test_invalid(kwargs: dict[str, float]) -> None:
    """Test invalid backoff parameters."""
    with pytest.raises(ValueError):
        Backoff(**kwargs)
