"""Polling interval policy for clients without server push."""

from dataclasses import dataclass
from typing import Optional

from adpipe.config import PollingConfig, settings


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff on consecutive poll failures.

    The interval is ``base`` while polls succeed, is multiplied per
    consecutive failure up to ``ceiling``, and snaps back to ``base`` on the
    first success. After ``degraded_threshold`` failures in a row the
    connection is reported as degraded; polling continues regardless.
    """

    base: float = 2.0
    multiplier: float = 2.0
    ceiling: float = 30.0
    degraded_threshold: int = 5

    def __post_init__(self):
        if self.base <= 0 or self.ceiling < self.base:
            raise ValueError(f"Invalid backoff interval: base={self.base} ceiling={self.ceiling}")
        if self.multiplier < 1:
            raise ValueError(f"Backoff multiplier must be >= 1, got {self.multiplier}")
        if self.degraded_threshold < 1:
            raise ValueError(f"degraded_threshold must be >= 1, got {self.degraded_threshold}")

    def next_delay(self, consecutive_failures: int) -> float:
        if consecutive_failures <= 0:
            return self.base
        return min(self.base * self.multiplier ** consecutive_failures, self.ceiling)

    def is_degraded(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= self.degraded_threshold

    @classmethod
    def from_settings(cls, config: Optional[PollingConfig] = None) -> "BackoffPolicy":
        config = config or settings.polling
        return cls(
            base=config.base_interval,
            multiplier=config.multiplier,
            ceiling=config.ceiling,
            degraded_threshold=config.degraded_threshold,
        )
