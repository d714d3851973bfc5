from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from class_reminders.errors import DataAccessError
from class_reminders.models.push_subscription import PushSubscription


class SubscriptionRepo:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self.sessions = sessions

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.sessions() as s:
                yield s
        except (SQLAlchemyError, OSError) as e:
            raise DataAccessError(f"subscription store unavailable: {e}") from e

    async def list_for_student(self, student_id: str) -> list[PushSubscription]:
        async with self._session() as s:
            q = await s.execute(
                select(PushSubscription)
                .where(PushSubscription.student_id == student_id)
                .order_by(PushSubscription.created_at.desc(), PushSubscription.id.desc())
            )
            return list(q.scalars())

    async def count_for_student(self, student_id: str) -> int:
        async with self._session() as s:
            q = await s.execute(
                select(func.count(PushSubscription.id)).where(PushSubscription.student_id == student_id)
            )
            return int(q.scalar_one())

    async def upsert(
        self,
        *,
        student_id: str,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_agent: Optional[str] = None,
    ) -> PushSubscription:
        """
        Регистрация подписки. Если endpoint уже есть, обновляем ключи
        и владельца (браузер мог перелогиниться под другим студентом).
        """
        async with self._session() as s:
            q = await s.execute(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
            sub = q.scalar_one_or_none()
            if sub:
                sub.student_id = student_id
                sub.p256dh = p256dh
                sub.auth = auth
                sub.user_agent = user_agent
            else:
                sub = PushSubscription(
                    student_id=student_id,
                    endpoint=endpoint,
                    p256dh=p256dh,
                    auth=auth,
                    user_agent=user_agent,
                )
                s.add(sub)
            await s.commit()
            await s.refresh(sub)
            return sub

    async def delete_by_endpoint(self, endpoint: str) -> bool:
        async with self._session() as s:
            res = await s.execute(delete(PushSubscription).where(PushSubscription.endpoint == endpoint))
            await s.commit()
            return (res.rowcount or 0) > 0
