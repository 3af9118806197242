"""Backoff for solver service calls."""

import random


def calculate_backoff(
    attempt: int,
    base: float = 0.5,
    max_delay: float = 8.0,
) -> float:
    """Exponential backoff with jitter.

    Returns delay in seconds: min(base * 2^attempt, max_delay) + jitter.
    Jitter is uniform random in [0, 0.5 * delay].
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = random.uniform(0, delay * 0.5)
    return delay + jitter


def is_retryable_status(status: int) -> bool:
    """5xx and 429 from the solving service are worth another attempt."""
    return status == 429 or 500 <= status < 600


class RetryState:
    """Counts attempts for a single solver call."""

    def __init__(self, max_retries: int):
        self.max_retries = max_retries
        self.retries = 0

    @property
    def can_retry(self) -> bool:
        return self.retries < self.max_retries

    def use_retry(self) -> float:
        """Consume one retry and return the delay to sleep before it."""
        delay = calculate_backoff(self.retries)
        self.retries += 1
        return delay
