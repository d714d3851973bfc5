from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

UTC = timezone.utc

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(dt: datetime) -> datetime:
    # SQLite отдаёт naive datetime даже для DateTime(timezone=True)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass(frozen=True)
class TimeRange:
    """Полуинтервал [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("TimeRange end is before start")

    @classmethod
    def ahead(cls, start: datetime, span: timedelta) -> "TimeRange":
        return cls(start=start, end=start + span)

    def __contains__(self, moment: datetime) -> bool:
        return self.start <= as_utc(moment) < self.end
