"""Retry spacing after transient transmission failures."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from verifactu_api.settings import Settings, get_settings


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff: ``min(cap, base * factor ** (retry_count - 1))``."""

    base_seconds: float = 60
    factor: float = 2.0
    cap_seconds: float = 3600

    def __post_init__(self):
        if self.base_seconds <= 0 or self.cap_seconds <= 0:
            raise ValueError("Backoff base and cap must be positive")
        if self.factor < 1:
            raise ValueError("Backoff factor must be >= 1")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls(
            base_seconds=settings.backoff_base_seconds,
            factor=settings.backoff_factor,
            cap_seconds=settings.backoff_cap_seconds,
        )

    def delay(self, retry_count: int) -> timedelta:
        """Delay before the next attempt, given failures so far (``>= 1``)."""
        exponent = max(0, retry_count - 1)
        seconds = self.cap_seconds
        # Large exponents overflow float pow
        if exponent < 64:
            seconds = min(self.cap_seconds, self.base_seconds * self.factor ** exponent)
        return timedelta(seconds=seconds)

    def next_eligible(self, now: datetime, retry_count: int) -> datetime:
        return now + self.delay(retry_count)
