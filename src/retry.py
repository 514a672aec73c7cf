"""
Exponential backoff with jitter.
"""

import random


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float = 0.1,
) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    The delay doubles per attempt (the exponent is capped at 10), is capped
    at max_delay and then spread by ±jitter_factor so that many resources
    failing at once do not retry in lockstep.

    Args:
        attempt: How many attempts have already failed
        base_delay: Delay of the first retry, in seconds
        max_delay: Upper bound before jitter, in seconds
        jitter_factor: Jitter factor ±X (0.1 = ±10%)

    Returns:
        Delay in seconds, never negative
    """
    delay = min(base_delay * 2 ** min(attempt, 10), max_delay)
    jitter = (random.random() * 2 - 1) * jitter_factor
    return max(0.0, delay * (1 + jitter))
