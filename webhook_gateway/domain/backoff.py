"""
Exponential backoff for failed event retries.
"""
import math


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """
    ``base_seconds * 2 ** retry_count``, capped at ``max_backoff_seconds``.

    Large retry counts never compute the power: once the doubling would pass
    the cap the cap is returned directly.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds:
        return float(max_backoff_seconds)

    # smallest exponent at which base * 2**n reaches the cap
    saturating_exponent = math.ceil(math.log2(max_backoff_seconds / base_seconds))
    if retry_count >= saturating_exponent:
        return float(max_backoff_seconds)

    return min(base_seconds * (2 ** retry_count), float(max_backoff_seconds))
