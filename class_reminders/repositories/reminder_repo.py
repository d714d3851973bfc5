# class_reminders/repositories/reminder_repo.py
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from class_reminders.errors import DataAccessError
from class_reminders.models.reminder import ClassReminder, ReminderState, TERMINAL_STATES
from class_reminders.utils.dates import Clock, as_utc, now_utc


@dataclass(frozen=True)
class ReminderCandidate:
    student_id: str
    occurrence_id: str
    scheduled_for: datetime
    notify_at: datetime
    subject_name: str = ""
    title: str = "Class Reminder"
    message: str = ""


class ReminderRepo:
    """
    Единственный владелец записей class_reminders.

    Каждая операция идёт в своей короткой транзакции. Все переходы состояния
    условные: UPDATE ... WHERE state='PENDING' AND attempts=<ожидаемое>.
    Если строку уже перевёл кто-то другой, метод вернёт False/None
    и ничего не запишет.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession], clock: Clock = now_utc) -> None:
        self.sessions = sessions
        self.clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.sessions() as s:
                yield s
        except (SQLAlchemyError, OSError) as e:
            raise DataAccessError(f"reminder store unavailable: {e}") from e

    # ---------- создание ----------

    async def upsert_if_absent(self, c: ReminderCandidate) -> bool:
        """True если запись создана, False если такая (student, occurrence) уже есть."""
        async with self._session() as s:
            q = await s.execute(
                select(ClassReminder.id)
                .where(ClassReminder.student_id == c.student_id)
                .where(ClassReminder.occurrence_id == c.occurrence_id)
            )
            if q.scalar_one_or_none() is not None:
                return False

            now = self.clock()
            notify_at = as_utc(c.notify_at)
            s.add(
                ClassReminder(
                    student_id=c.student_id,
                    occurrence_id=c.occurrence_id,
                    subject_name=c.subject_name,
                    title=c.title,
                    message=c.message,
                    scheduled_for=as_utc(c.scheduled_for),
                    notify_at=notify_at,
                    next_attempt_at=notify_at,
                    state=ReminderState.PENDING.value,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await s.commit()
            except IntegrityError:
                # параллельный тик успел вставить ту же пару
                await s.rollback()
                return False
            return True

    # ---------- чтение ----------

    async def get(self, student_id: str, occurrence_id: str) -> Optional[ClassReminder]:
        async with self._session() as s:
            q = await s.execute(
                select(ClassReminder)
                .where(ClassReminder.student_id == student_id)
                .where(ClassReminder.occurrence_id == occurrence_id)
            )
            return q.scalar_one_or_none()

    async def list_for_student(
        self, student_id: str, *, upcoming_only: bool = True, limit: int = 10
    ) -> list[ClassReminder]:
        stmt = (
            select(ClassReminder)
            .where(ClassReminder.student_id == student_id)
            .order_by(ClassReminder.scheduled_for.asc())
            .limit(limit)
        )
        if upcoming_only:
            stmt = stmt.where(ClassReminder.scheduled_for >= self.clock())
        async with self._session() as s:
            q = await s.execute(stmt)
            return list(q.scalars())

    async def fetch_due(self, now: datetime, limit: int) -> list[ClassReminder]:
        """PENDING с наступившим notify_at (и не отложенные бэкоффом), старые первыми."""
        now = as_utc(now)
        async with self._session() as s:
            q = await s.execute(
                select(ClassReminder)
                .where(ClassReminder.state == ReminderState.PENDING.value)
                .where(ClassReminder.notify_at <= now)
                .where(ClassReminder.next_attempt_at <= now)
                .order_by(ClassReminder.notify_at.asc(), ClassReminder.id.asc())
                .limit(limit)
            )
            return list(q.scalars())

    async def count_by_state(self) -> dict[str, int]:
        async with self._session() as s:
            q = await s.execute(
                select(ClassReminder.state, func.count(ClassReminder.id)).group_by(ClassReminder.state)
            )
            counts = {st.value: 0 for st in ReminderState}
            for state, n in q.all():
                counts[state] = int(n)
            return counts

    # ---------- переходы состояния ----------

    async def _transition(self, reminder_id: int, expected_attempts: int, **values) -> bool:
        values.setdefault("updated_at", self.clock())
        async with self._session() as s:
            res = await s.execute(
                update(ClassReminder)
                .where(ClassReminder.id == reminder_id)
                .where(ClassReminder.state == ReminderState.PENDING.value)
                .where(ClassReminder.attempts == expected_attempts)
                .values(**values)
            )
            await s.commit()
            return (res.rowcount or 0) == 1

    async def mark_sent(self, reminder_id: int, expected_attempts: int) -> bool:
        now = self.clock()
        return await self._transition(
            reminder_id,
            expected_attempts,
            state=ReminderState.SENT.value,
            attempts=expected_attempts + 1,
            last_error=None,
            sent_at=now,
            updated_at=now,
        )

    async def mark_failed(
        self,
        reminder_id: int,
        reason: str,
        expected_attempts: int,
        *,
        max_attempts: int,
        retry_at: Optional[datetime] = None,
        permanent: bool = False,
    ) -> Optional[ReminderState]:
        """
        Засчитывает попытку. FAILED только когда попытки кончились
        (или permanent=True), иначе запись остаётся PENDING до retry_at.
        Возвращает новое состояние, None если строку уже перевели.
        """
        attempts = expected_attempts + 1
        now = self.clock()
        # last_error заполняется только в FAILED, причина ретраев идёт в лог
        if permanent or attempts >= max_attempts:
            new_state = ReminderState.FAILED
            values = {"state": new_state.value, "last_error": (reason or "unknown")[:255]}
        else:
            new_state = ReminderState.PENDING
            values = {
                "next_attempt_at": as_utc(retry_at) if retry_at else now,
                "last_error": None,
            }
        ok = await self._transition(
            reminder_id,
            expected_attempts,
            attempts=attempts,
            updated_at=now,
            **values,
        )
        return new_state if ok else None

    async def mark_expired(self, reminder_id: int, expected_attempts: int) -> bool:
        return await self._transition(
            reminder_id, expected_attempts, state=ReminderState.EXPIRED.value
        )

    # ---------- удаление ----------

    async def delete_older_than(
        self, cutoff: datetime, states: Iterable[ReminderState] = TERMINAL_STATES
    ) -> int:
        # PENDING не удаляем никогда, даже если попросили
        values = sorted(ReminderState(st).value for st in states if ReminderState(st) in TERMINAL_STATES)
        if not values:
            return 0
        async with self._session() as s:
            res = await s.execute(
                delete(ClassReminder)
                .where(ClassReminder.state.in_(values))
                .where(ClassReminder.updated_at < as_utc(cutoff))
            )
            await s.commit()
            return res.rowcount or 0

    async def delete_for_student(self, student_id: str) -> int:
        async with self._session() as s:
            res = await s.execute(
                delete(ClassReminder).where(ClassReminder.student_id == student_id)
            )
            await s.commit()
            return res.rowcount or 0
