# class_reminders/container.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from class_reminders.config import Settings
from class_reminders.db import make_sessionmaker
from class_reminders.providers.timetable import SqlTimetableSource, TimetableSource
from class_reminders.providers.webpush import PushTransport, WebPushTransport
from class_reminders.repositories.reminder_repo import ReminderRepo
from class_reminders.repositories.subscription_repo import SubscriptionRepo
from class_reminders.scheduler.jobs import ReminderScheduler
from class_reminders.services.backoff import ExponentialBackoff
from class_reminders.services.cleanup_service import CleanupService
from class_reminders.services.credentials import VapidKeyPair, load_from_settings
from class_reminders.services.dispatcher import Dispatcher
from class_reminders.services.reminder_generator import ReminderGenerator
from class_reminders.services.stats_service import StatsService
from class_reminders.utils.dates import Clock, now_utc


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    reminders: ReminderRepo
    subscriptions: SubscriptionRepo
    generator: ReminderGenerator
    cleanup: CleanupService
    stats: StatsService
    transport: PushTransport
    keys: Optional[VapidKeyPair] = None
    dispatcher: Optional[Dispatcher] = None
    scheduler: Optional[ReminderScheduler] = None


def build_services(
    engine: AsyncEngine,
    settings: Settings,
    *,
    with_delivery: bool = True,
    keys: Optional[VapidKeyPair] = None,
    transport: Optional[PushTransport] = None,
    timetable: Optional[TimetableSource] = None,
    clock: Clock = now_utc,
) -> Services:
    """
    Единая сборка репозиториев и сервисов.
    with_delivery=False: без VAPID-ключей (generate/stats/cleanup не шлют пуши).
    """
    sessions = make_sessionmaker(engine)

    # repos
    reminders = ReminderRepo(sessions, clock=clock)
    subscriptions = SubscriptionRepo(sessions)
    timetable = timetable or SqlTimetableSource(sessions, tz=settings.SCHEDULER_TZ)
    transport = transport or WebPushTransport(
        ttl=settings.PUSH_TTL_SECONDS, timeout=settings.push_http_timeout
    )

    # services
    svc = Services(
        settings=settings,
        engine=engine,
        reminders=reminders,
        subscriptions=subscriptions,
        generator=ReminderGenerator(
            reminders,
            timetable,
            lead_time=settings.lead_time,
            concurrency=settings.GENERATE_CONCURRENCY,
        ),
        cleanup=CleanupService(reminders, clock=clock),
        stats=StatsService(reminders),
        transport=transport,
    )

    if not with_delivery:
        return svc

    # ConfigError тут фатален на старте
    svc.keys = keys or load_from_settings(settings)
    svc.dispatcher = Dispatcher(
        reminders,
        subscriptions,
        transport,
        svc.keys,
        max_attempts=settings.REMINDER_MAX_ATTEMPTS,
        backoff=ExponentialBackoff.from_settings(settings),
        expire_grace=settings.expire_grace,
        concurrency=settings.SEND_CONCURRENCY,
        send_timeout=settings.SEND_TIMEOUT_SECONDS,
        delivery_mode=settings.DELIVERY_MODE,
        clock=clock,
    )
    svc.scheduler = ReminderScheduler(
        svc.generator,
        svc.dispatcher,
        reminders,
        svc.cleanup,
        horizon=settings.generate_horizon,
        batch_size=settings.DISPATCH_BATCH_SIZE,
        retention=settings.retention,
        clock=clock,
    )
    return svc
