"""Retry delay policy for failed queue items."""

from __future__ import annotations


def compute_backoff_seconds(attempts: int, *, base_seconds: int = 60, cap_seconds: int = 3600) -> int:
    """Delay before the next try after ``attempts`` failures.

    The first failure waits ``base_seconds`` and each further failure doubles
    it: 60, 120, 240, 480, 960 ... capped at ``cap_seconds``.
    """

    if attempts <= 0:
        return 0
    # Bound the exponent so large attempt counts stay cheap.
    exponent = min(attempts - 1, 32)
    return int(min((2**exponent) * base_seconds, cap_seconds))
