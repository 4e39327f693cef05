"""Retry policy for provider calls: exponential backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from conductor.core.errors import NETWORK_INTERRUPTED, RATE_LIMITED

DEFAULT_RETRY_KINDS = frozenset({RATE_LIMITED, NETWORK_INTERRUPTED})


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    retry_on: frozenset[str] = field(default_factory=lambda: DEFAULT_RETRY_KINDS)

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the attempt after ``attempt`` (1-indexed)."""
        exp_delay = self.base_delay * (2 ** max(0, attempt - 1))
        delay = min(exp_delay, self.max_delay)
        if self.jitter > 0:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, delay)

    def is_retryable(self, kind: str) -> bool:
        return kind in self.retry_on

    def should_retry(self, kind: str, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        return self.is_retryable(kind)
