"""
Retry backoff.

Delays come from a fixed escalating table, clamped to its last entry, plus
bounded random jitter so a burst of failures does not re-deliver in lockstep.
"""

import random
from typing import Callable, Sequence

DEFAULT_BACKOFF_DELAYS_MS = (1000, 2000, 5000)
DEFAULT_JITTER_MAX_MS = 500

BackoffFn = Callable[[int], float]


def backoff_delay(
    attempt: int,
    delays_ms: Sequence[int] = DEFAULT_BACKOFF_DELAYS_MS,
    jitter_max_ms: int = DEFAULT_JITTER_MAX_MS,
    rng: Callable[[], float] = random.random
) -> float:
    """
    Seconds to wait before re-delivering after failed attempt ``attempt`` (1-based).

    >>> backoff_delay(1, jitter_max_ms=0)
    1.0
    >>> backoff_delay(9, jitter_max_ms=0)
    5.0
    """
    if not delays_ms:
        return 0.0
    index = min(max(attempt, 1), len(delays_ms)) - 1
    jitter_ms = rng() * jitter_max_ms
    return (delays_ms[index] + jitter_ms) / 1000.0


def make_backoff(
    delays_ms: Sequence[int] = DEFAULT_BACKOFF_DELAYS_MS,
    jitter_max_ms: int = DEFAULT_JITTER_MAX_MS,
    rng: Callable[[], float] = random.random
) -> BackoffFn:
    """Bind a table and jitter bound into the ``attempt -> delay`` function brokers take."""
    delays = tuple(delays_ms)

    def _backoff(attempt: int) -> float:
        return backoff_delay(attempt, delays, jitter_max_ms, rng)

    return _backoff
