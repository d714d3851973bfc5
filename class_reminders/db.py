# class_reminders/db.py
from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from class_reminders.config import settings
from class_reminders.errors import ConfigError
from class_reminders.models.base import Base


# === 1. Движок ===
# Пример DSN: postgresql+asyncpg://app:app@db:5432/app
def make_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> AsyncEngine:
    dsn = url or settings.DATABASE_URL
    if not dsn:
        raise ConfigError("DATABASE_URL is not set")
    kwargs = {"echo": settings.SQL_ECHO if echo is None else echo, "future": True}
    if not dsn.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(dsn, **kwargs)


# === 2. Сессии ===
def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# === 3. Dev-инициализация ===
async def init_db(engine: AsyncEngine) -> None:
    """
    Создаём таблицы, если их нет.
    В проде используй alembic upgrade head.
    """
    # модели должны быть импортированы до create_all
    import class_reminders.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
