# class_reminders/main.py
from __future__ import annotations

import asyncio
import logging
import os
import signal

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from class_reminders.config import settings
from class_reminders.container import build_services
from class_reminders.core.logging import setup_logging
from class_reminders.db import init_db, make_engine
from class_reminders.scheduler.jobs import setup_scheduler

logger = logging.getLogger("class_reminders.main")


async def main() -> None:
    """Долгоживущий процесс: APScheduler гоняет pipeline и cleanup по интервалам."""
    logger.info(
        "boot: starting with LOG_LEVEL=%s lead=%smin max_attempts=%s retention=%sd mode=%s",
        settings.log_level,
        settings.REMINDER_LEAD_MINUTES,
        settings.REMINDER_MAX_ATTEMPTS,
        settings.REMINDER_RETENTION_DAYS,
        settings.DELIVERY_MODE,
    )

    engine = make_engine()

    # DB init: в проде миграции через Alembic, create_all только если явно включили
    if os.getenv("INIT_DB_ON_START", "0") == "1":
        await init_db(engine)
        logger.info("DB init done (create_all enabled by ENV)")
    else:
        logger.info("DB init skipped (use alembic upgrade head)")

    # ConfigError (ключи) валит процесс сразу
    services = build_services(engine, settings)
    pipeline = services.scheduler

    # ---------- Scheduler ----------
    scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TZ)
    setup_scheduler(
        scheduler,
        pipeline,
        dispatch_interval_seconds=settings.DISPATCH_INTERVAL_SECONDS,
        cleanup_interval_hours=settings.CLEANUP_INTERVAL_HOURS,
    )
    scheduler.start()
    logger.info(
        "scheduler started: pipeline every %ss, cleanup every %sh",
        settings.DISPATCH_INTERVAL_SECONDS,
        settings.CLEANUP_INTERVAL_HOURS,
    )

    # Корректное завершение по сигналам
    stop_evt = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _stop(*_: object) -> None:
        stop_evt.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    await stop_evt.wait()

    # ---------- Shutdown ----------
    logger.info("shutdown: stopping scheduler")
    pipeline.stop()
    try:
        scheduler.shutdown(wait=False)
    except Exception:
        logger.exception("scheduler shutdown failed")

    # даём начатым записям доехать, иначе они останутся PENDING до следующего запуска
    try:
        await asyncio.wait_for(pipeline.wait_idle(), timeout=settings.SEND_TIMEOUT_SECONDS * 2)
    except asyncio.TimeoutError:
        logger.warning("shutdown: in-flight batch did not finish in time")

    try:
        await engine.dispose()
    except Exception:
        logger.exception("engine dispose failed")


def run() -> None:
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
