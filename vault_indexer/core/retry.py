"""Backoff delays shared by the feed reconnect loop and the state sampler."""

import random


def backoff_delay(attempt: int, initial: float, cap: float, jitter: float = 0.1) -> float:
    """Exponential delay for the given 1-based attempt, capped, with proportional jitter."""
    base = min(initial * (2 ** max(attempt - 1, 0)), cap)
    if jitter <= 0:
        return base
    return min(base + random.uniform(0, base * jitter), cap)
