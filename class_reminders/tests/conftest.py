import asyncio
from datetime import datetime, timedelta

import pytest

from class_reminders.db import init_db, make_engine, make_sessionmaker
from class_reminders.errors import DataAccessError
from class_reminders.providers.timetable import ClassOccurrence
from class_reminders.providers.webpush import DeliveryResult
from class_reminders.repositories.reminder_repo import ReminderCandidate, ReminderRepo
from class_reminders.repositories.subscription_repo import SubscriptionRepo
from class_reminders.services.backoff import ExponentialBackoff
from class_reminders.services.credentials import generate_vapid_keys, load_vapid_keys
from class_reminders.services.dispatcher import Dispatcher
from class_reminders.utils.dates import UTC, TimeRange

T0 = datetime(2025, 10, 20, 8, 0, tzinfo=UTC)  # понедельник


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


class FakeTimetable:
    """Пары и составы задаются прямо в тесте; failing: пары, чей состав 'не читается'."""

    def __init__(self, occurrences=(), rosters=None, failing=()):
        self.occurrences = list(occurrences)
        self.rosters = dict(rosters or {})
        self.failing = set(failing)

    def add(self, occ_id: str, start: datetime, students, subject: str = "Math"):
        self.occurrences.append(ClassOccurrence(id=occ_id, start_time=start, subject_name=subject))
        self.rosters[occ_id] = list(students)

    async def list_occurrences(self, window: TimeRange):
        return [o for o in self.occurrences if o.start_time in window]

    async def list_students(self, occurrence: ClassOccurrence):
        if occurrence.id in self.failing:
            raise DataAccessError(f"roster down for {occurrence.id}")
        return self.rosters.get(occurrence.id, [])


class FakeTransport:
    """
    Ответы по endpoint: список, элементы по очереди (последний повторяется).
    Элемент: int-статус успеха, исключение (raise) или корутинная функция.
    """

    def __init__(self, responses=None, default=201):
        self.responses = dict(responses or {})
        self.default = default
        self.calls: list[tuple[str, bytes]] = []

    async def send(self, subscription, payload, keys):
        self.calls.append((subscription.endpoint, payload))
        queue = self.responses.get(subscription.endpoint)
        item = self.default
        if queue:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item()
        return DeliveryResult(status_code=item)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}"


@pytest.fixture
async def engine(db_url):
    eng = make_engine(db_url, echo=False)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def store(sessions, clock):
    return ReminderRepo(sessions, clock=clock)


@pytest.fixture
def subs(sessions):
    return SubscriptionRepo(sessions)


@pytest.fixture
def timetable():
    return FakeTimetable()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture(scope="session")
def vapid_keys():
    public, private = generate_vapid_keys()
    return load_vapid_keys(public, private, "mailto:ops@example.com")


@pytest.fixture
def make_dispatcher(store, subs, transport, vapid_keys, clock):
    def _make(**kw):
        params = dict(
            max_attempts=3,
            backoff=ExponentialBackoff(base_seconds=30, factor=2, max_seconds=900),
            expire_grace=timedelta(hours=1),
            concurrency=1,
            send_timeout=1.0,
            delivery_mode="fan_out",
            clock=clock,
        )
        params.update(kw)
        return Dispatcher(store, subs, params.pop("transport", transport), vapid_keys, **params)

    return _make


def candidate(student_id="s1", occurrence_id="occ-1", *, start=None, lead=timedelta(minutes=5), **kw):
    start = start or T0 + timedelta(minutes=5)
    return ReminderCandidate(
        student_id=student_id,
        occurrence_id=occurrence_id,
        scheduled_for=start,
        notify_at=start - lead,
        subject_name=kw.pop("subject_name", "Math"),
        message=kw.pop("message", "Math starts soon"),
        **kw,
    )


async def subscribe(subs: SubscriptionRepo, student_id: str, endpoint: str):
    return await subs.upsert(student_id=student_id, endpoint=endpoint, p256dh="p-key", auth="a-key")


async def never_returns():
    await asyncio.sleep(3600)
