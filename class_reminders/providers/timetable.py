# class_reminders/providers/timetable.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Protocol, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from class_reminders.errors import DataAccessError
from class_reminders.models.timetable import Student, TimetableSlot
from class_reminders.utils.dates import UTC, TimeRange, as_utc

# Номер пары -> время начала (локальное время учебного заведения)
CLASS_TIMES: dict[int, time] = {
    1: time(9, 30),
    2: time(10, 30),
    3: time(11, 30),
    4: time(12, 30),
    5: time(13, 30),
    6: time(14, 30),
    7: time(15, 30),
}

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class ClassOccurrence:
    id: str
    start_time: datetime
    subject_name: str = ""
    section: tuple = ()


class TimetableSource(Protocol):
    async def list_occurrences(self, window: TimeRange) -> Sequence[ClassOccurrence]: ...

    async def list_students(self, occurrence: ClassOccurrence) -> Sequence[str]: ...


def occurrence_id(slot_id: int, day: date) -> str:
    return f"{slot_id}@{day.isoformat()}"


class SqlTimetableSource:
    """
    Разворачивает недельное расписание портала в конкретные пары.
    Воскресенье пропускаем, напоминания только для лекций с предметом.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession], tz: str = "UTC") -> None:
        self.sessions = sessions
        self.tz = ZoneInfo(tz)

    async def list_occurrences(self, window: TimeRange) -> list[ClassOccurrence]:
        try:
            async with self.sessions() as s:
                q = await s.execute(
                    select(TimetableSlot)
                    .where(TimetableSlot.kind == "lecture")
                    .where(TimetableSlot.subject_name.is_not(None))
                )
                slots = list(q.scalars())
        except (SQLAlchemyError, OSError) as e:
            raise DataAccessError(f"timetable unavailable: {e}") from e

        by_day: dict[str, list[TimetableSlot]] = {}
        for slot in slots:
            by_day.setdefault(slot.weekday.lower(), []).append(slot)

        out: list[ClassOccurrence] = []
        day = as_utc(window.start).astimezone(self.tz).date()
        last = as_utc(window.end).astimezone(self.tz).date()
        while day <= last:
            weekday = WEEKDAYS[day.weekday()]
            if weekday != "sunday":
                for slot in by_day.get(weekday, []):
                    start_local = CLASS_TIMES.get(slot.hour)
                    if start_local is None:
                        continue
                    start = datetime.combine(day, start_local, tzinfo=self.tz).astimezone(UTC)
                    if start in window:
                        out.append(
                            ClassOccurrence(
                                id=occurrence_id(slot.id, day),
                                start_time=start,
                                subject_name=slot.subject_name or "",
                                section=(slot.section, slot.year, slot.semester),
                            )
                        )
            day += timedelta(days=1)

        out.sort(key=lambda o: (o.start_time, o.id))
        return out

    async def list_students(self, occurrence: ClassOccurrence) -> list[str]:
        section, year, semester = occurrence.section
        try:
            async with self.sessions() as s:
                q = await s.execute(
                    select(Student.id)
                    .where(Student.section == section)
                    .where(Student.year == year)
                    .where(Student.semester == semester)
                    .where(Student.is_active.is_(True))
                    .order_by(Student.id)
                )
                return list(q.scalars())
        except (SQLAlchemyError, OSError) as e:
            raise DataAccessError(f"roster unavailable for {occurrence.id}: {e}") from e
