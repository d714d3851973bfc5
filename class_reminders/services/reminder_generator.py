# class_reminders/services/reminder_generator.py
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from class_reminders.metrics import (
    reminders_created_total,
    reminders_skipped_total,
    roster_failures_total,
)
from class_reminders.providers.timetable import ClassOccurrence, TimetableSource
from class_reminders.repositories.reminder_repo import ReminderCandidate, ReminderRepo
from class_reminders.utils.dates import TimeRange

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Class Reminder"

# {subject} и {minutes} подставляются при генерации
CLASS_REMINDER_MESSAGES = (
    "🚀 Time to level up! Your {subject} class starts in {minutes} minutes. Ready to conquer?",
    "⚡ Quick reminder: {subject} class in {minutes} minutes. Your brain is about to get a workout!",
    "🎯 Class alert! {subject} starts in {minutes} minutes. Time to show off your knowledge!",
    "📚 {minutes} minutes until {subject} class. Your future self will thank you for being on time!",
    "🌟 Hey there, superstar! {subject} class begins in {minutes} minutes. Let's make it count!",
    "💪 Time to shine! Your {subject} class starts in {minutes} minutes. You've got this!",
    "🎓 Class reminder: {subject} in {minutes} minutes. Knowledge is power!",
)


@dataclass
class GeneratedBatch:
    created: int = 0
    skipped: int = 0
    failed_occurrences: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "failed_occurrences": len(self.failed_occurrences),
        }


class ReminderGenerator:
    def __init__(
        self,
        store: ReminderRepo,
        timetable: TimetableSource,
        *,
        lead_time: timedelta,
        concurrency: int = 5,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.timetable = timetable
        self.lead_time = lead_time
        self.concurrency = concurrency
        self.rng = rng or random.Random()

    def _message(self, subject: str) -> str:
        minutes = int(self.lead_time.total_seconds() // 60)
        template = self.rng.choice(CLASS_REMINDER_MESSAGES)
        return template.format(subject=subject or "your", minutes=minutes)

    async def generate(self, window: TimeRange) -> GeneratedBatch:
        """
        Для каждой пары из окна и каждого записанного студента
        создаёт PENDING-напоминание, если его ещё нет.
        Сбой чтения состава одной пары пропускает только эту пару.
        """
        occurrences = await self.timetable.list_occurrences(window)
        batch = GeneratedBatch()
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(occ: ClassOccurrence) -> None:
            async with sem:
                await self._generate_for(occ, batch)

        results = await asyncio.gather(*(_one(o) for o in occurrences), return_exceptions=True)
        for res in results:
            # хранилище легло, тик целиком отменяется
            if isinstance(res, BaseException):
                raise res

        logger.info(
            "generate: window=[%s, %s) occurrences=%d created=%d skipped=%d failed=%d",
            window.start.isoformat(),
            window.end.isoformat(),
            len(occurrences),
            batch.created,
            batch.skipped,
            len(batch.failed_occurrences),
        )
        return batch

    async def _generate_for(self, occ: ClassOccurrence, batch: GeneratedBatch) -> None:
        try:
            student_ids = await self.timetable.list_students(occ)
        except Exception:
            logger.exception("generate: roster read failed, skipping occurrence %s", occ.id)
            batch.failed_occurrences.append(occ.id)
            roster_failures_total.inc()
            return

        notify_at = occ.start_time - self.lead_time
        # dict.fromkeys: дубли в составе не должны давать лишних вставок
        for student_id in dict.fromkeys(student_ids):
            candidate = ReminderCandidate(
                student_id=str(student_id),
                occurrence_id=occ.id,
                scheduled_for=occ.start_time,
                notify_at=notify_at,
                subject_name=occ.subject_name,
                title=REMINDER_TITLE,
                message=self._message(occ.subject_name),
            )
            if await self.store.upsert_if_absent(candidate):
                batch.created += 1
                reminders_created_total.inc()
            else:
                batch.skipped += 1
                reminders_skipped_total.inc()
