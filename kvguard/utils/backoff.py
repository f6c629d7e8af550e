"""TTL jitter and retry backoff helpers.

Both take an injectable ``random.Random`` so callers can seed them in tests.
"""

from __future__ import annotations

import random


def jittered_ttl(base_ttl: float, jitter_max: float, rng: random.Random | None = None) -> float:
    """Return ``base_ttl`` plus a uniform jitter drawn from ``[0, jitter_max)``.

    Spreading expiries keeps keys populated in the same burst from expiring
    in the same instant.

    Args:
        base_ttl: TTL before jitter, in seconds.
        jitter_max: Exclusive upper bound of the jitter, in seconds.
        rng: Random source (module-level generator when omitted).

    Returns:
        Effective TTL in seconds.
    """
    if base_ttl <= 0:
        raise ValueError("base_ttl must be > 0")
    if jitter_max < 0:
        raise ValueError("jitter_max must be >= 0")
    if jitter_max == 0:
        return base_ttl
    source = rng or random
    # random() is in [0, 1), so the jitter never reaches jitter_max
    return base_ttl + source.random() * jitter_max


def backoff_delay(
    attempt: int,
    *,
    base: float,
    cap: float,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with equal jitter, bounded by ``cap``.

    Half of the exponential step is always slept and the other half is
    random, so waiters desynchronise but still make guaranteed progress
    through their attempt budget.

    Args:
        attempt: Zero-based attempt number that just failed.
        base: Delay ceiling for the first attempt, in seconds.
        cap: Maximum delay for any attempt, in seconds.
        rng: Random source (module-level generator when omitted).

    Returns:
        Sleep interval in seconds, in ``[ceiling / 2, ceiling]`` where
        ``ceiling = min(cap, base * 2**attempt)``.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if base <= 0 or cap <= 0:
        raise ValueError("base and cap must be > 0")
    source = rng or random
    # Exponent clamp keeps the float product finite for long retry loops
    half = min(cap, base * (2 ** min(attempt, 32))) / 2
    return half + source.uniform(0, half)
