"""
Exponential backoff policy for reconciliation retries.
"""

from __future__ import annotations

from dataclasses import dataclass

from backend.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Base delay doubling per failed attempt, capped, with a bounded attempt count."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 120.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def delay_for(self, failed_attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        if failed_attempt < 1:
            return 0.0
        # Cap the exponent so huge attempt numbers don't overflow the float.
        exponent = min(failed_attempt - 1, 32)
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
