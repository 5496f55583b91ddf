"""Exponential backoff schedule for failed subscription payments."""
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """
    delay(n) = min(base * 2**n, max), computed in whole seconds.

    The cap saturates: large attempt numbers return max_delay without ever
    building a huge intermediate value.
    """

    base_delay_seconds: int = 1800
    max_delay_seconds: int = 86400

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0 or self.max_delay_seconds <= 0:
            raise ValueError("Retry delays must be positive")
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError("Base delay cannot exceed max delay")

    def delay_seconds(self, attempt: int) -> int:
        if attempt < 0:
            raise ValueError(f"Attempt must be non-negative, got {attempt}")
        # base << n > max for every n at or beyond max's bit length
        if attempt >= self.max_delay_seconds.bit_length():
            return self.max_delay_seconds
        return min(self.base_delay_seconds << attempt, self.max_delay_seconds)

    def delay(self, attempt: int) -> timedelta:
        """Backoff before retry number ``attempt`` (0-based)."""
        return timedelta(seconds=self.delay_seconds(attempt))

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + self.delay(attempt)
