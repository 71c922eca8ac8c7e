"""
Retry Backoff Policy

Exponential backoff with a ceiling: after the n-th failed attempt the
event waits min(2^n * base, ceiling) before it becomes due again.
"""

from datetime import datetime, timedelta

DEFAULT_BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 3_600_000  # 1 hour


def compute_backoff_ms(
    attempts: int,
    base_ms: int = DEFAULT_BASE_BACKOFF_MS,
    max_ms: int = MAX_BACKOFF_MS
) -> int:
    """Delay in milliseconds after `attempts` failed deliveries."""
    if attempts < 0:
        raise ValueError(f"attempts must not be negative: {attempts}")
    if base_ms <= 0 or max_ms <= 0:
        raise ValueError("backoff base and ceiling must be positive")

    # 2**attempts grows without bound in Python; stop before it is huge
    if attempts >= max_ms.bit_length():
        return max_ms
    return min((2 ** attempts) * base_ms, max_ms)


def next_retry_time(
    now: datetime,
    attempts: int,
    base_ms: int = DEFAULT_BASE_BACKOFF_MS,
    max_ms: int = MAX_BACKOFF_MS
) -> datetime:
    """Calculate next attempt time with exponential backoff."""
    return now + timedelta(milliseconds=compute_backoff_ms(attempts, base_ms, max_ms))
