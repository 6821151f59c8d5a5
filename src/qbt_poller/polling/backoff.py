"""
Exponential backoff for failed polls.
"""


def compute_backoff_interval(
    base_interval_ms: int, consecutive_failures: int, max_interval_ms: int
) -> int:
    """
    Calculate the poll interval after a run of failures.

    The interval doubles with every consecutive failure and is clamped at
    max_interval_ms. With no failures the base interval applies.

    Args:
        base_interval_ms: Configured poll interval
        consecutive_failures: Failures since the last success
        max_interval_ms: Upper bound for the interval

    Returns:
        Interval in milliseconds
    """
    if consecutive_failures < 1:
        return base_interval_ms

    return min(base_interval_ms * 2 ** (consecutive_failures - 1), max_interval_ms)
