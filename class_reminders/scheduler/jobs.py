# class_reminders/scheduler/jobs.py
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from class_reminders.errors import PartialBatchError
from class_reminders.metrics import scheduler_ticks_skipped_total
from class_reminders.repositories.reminder_repo import ReminderRepo
from class_reminders.services.cleanup_service import CleanupService
from class_reminders.services.dispatcher import Dispatcher, DispatchReport
from class_reminders.services.reminder_generator import GeneratedBatch, ReminderGenerator
from class_reminders.utils.dates import Clock, TimeRange, now_utc

logger = logging.getLogger(__name__)


@dataclass
class PipelineTick:
    tick: int
    generated: GeneratedBatch
    report: DispatchReport


class ReminderScheduler:
    """
    Два независимых триггера:
      - pipeline: генерация на горизонт вперёд, затем рассылка due-записей
      - cleanup: чистка терминальных записей
    Каждый триггер сам с собой не пересекается: если прошлый запуск
    ещё идёт, новый тик пропускается (не ставится в очередь).
    """

    def __init__(
        self,
        generator: ReminderGenerator,
        dispatcher: Dispatcher,
        store: ReminderRepo,
        cleanup: CleanupService,
        *,
        horizon: timedelta,
        batch_size: int,
        retention: timedelta,
        clock: Clock = now_utc,
    ) -> None:
        self.generator = generator
        self.dispatcher = dispatcher
        self.store = store
        self.cleanup = cleanup
        self.horizon = horizon
        self.batch_size = batch_size
        self.retention = retention
        self.clock = clock

        self.cancel_event = asyncio.Event()
        self._pipeline_lock = asyncio.Lock()
        self._cleanup_lock = asyncio.Lock()
        self._ticks = itertools.count(1)

    def stop(self) -> None:
        """Кооперативная отмена: текущий батч доделает начатые записи, новые не возьмёт."""
        self.cancel_event.set()

    async def wait_idle(self) -> None:
        async with self._pipeline_lock:
            pass
        async with self._cleanup_lock:
            pass

    async def run_pipeline_tick(self) -> Optional[PipelineTick]:
        if self._pipeline_lock.locked():
            scheduler_ticks_skipped_total.labels(trigger="pipeline").inc()
            logger.warning("pipeline tick skipped: previous run still busy")
            return None
        if self.cancel_event.is_set():
            return None

        async with self._pipeline_lock:
            tick = next(self._ticks)
            now = self.clock()
            try:
                generated = await self.generator.generate(TimeRange.ahead(now, self.horizon))
                due = await self.store.fetch_due(now, self.batch_size)
                report = await self.dispatcher.dispatch_batch(due, cancel_event=self.cancel_event)
            except Exception:
                # хранилище/ключи: тик целиком отменяется, следующий попробует снова
                logger.exception("pipeline tick aborted", extra={"tick": tick})
                return None

            try:
                report.raise_for_errors()
            except PartialBatchError as e:
                # не фатально: упавшие записи остались PENDING и уйдут на следующем тике
                logger.warning("pipeline tick finished: %s", e, extra={"tick": tick})
            return PipelineTick(tick=tick, generated=generated, report=report)

    async def run_cleanup_tick(self) -> Optional[dict]:
        if self._cleanup_lock.locked():
            scheduler_ticks_skipped_total.labels(trigger="cleanup").inc()
            logger.warning("cleanup tick skipped: previous run still busy")
            return None

        async with self._cleanup_lock:
            try:
                return await self.cleanup.cleanup(self.retention)
            except Exception:
                logger.exception("cleanup tick aborted")
                return None


def setup_scheduler(
    scheduler: AsyncIOScheduler,
    pipeline: ReminderScheduler,
    *,
    dispatch_interval_seconds: int,
    cleanup_interval_hours: int,
) -> None:
    """
    Регистрирует периодические задачи.
    Вызывается один раз при старте приложения.
    """
    scheduler.add_job(
        pipeline.run_pipeline_tick,
        trigger="interval",
        seconds=dispatch_interval_seconds,
        id="class_reminders_pipeline",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=dispatch_interval_seconds,
    )
    scheduler.add_job(
        pipeline.run_cleanup_tick,
        trigger="interval",
        hours=cleanup_interval_hours,
        id="class_reminders_cleanup",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=3600,
    )
