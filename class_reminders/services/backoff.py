from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class ExponentialBackoff:
    """Пауза перед попыткой n+1 после n-й неудачной: base * factor**(n-1), не больше max."""
    base_seconds: float = 30.0
    factor: float = 2.0
    max_seconds: float = 900.0

    def delay(self, failed_attempts: int) -> timedelta:
        if failed_attempts < 1:
            return timedelta(0)
        seconds = self.base_seconds * (self.factor ** (failed_attempts - 1))
        return timedelta(seconds=min(seconds, self.max_seconds))

    def next_attempt_at(
        self,
        now: datetime,
        failed_attempts: int,
        retry_after: Optional[float] = None,
    ) -> datetime:
        delay = self.delay(failed_attempts)
        # Retry-After от push-сервиса важнее нашего расписания
        if retry_after:
            delay = max(delay, timedelta(seconds=retry_after))
        return now + delay

    @classmethod
    def from_settings(cls, settings) -> "ExponentialBackoff":
        return cls(
            base_seconds=settings.BACKOFF_BASE_SECONDS,
            factor=settings.BACKOFF_FACTOR,
            max_seconds=settings.BACKOFF_MAX_SECONDS,
        )
