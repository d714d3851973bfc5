from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from class_reminders.db import make_sessionmaker
from class_reminders.errors import DataAccessError
from class_reminders.models.reminder import ReminderState
from class_reminders.repositories.reminder_repo import ReminderRepo
from class_reminders.utils.dates import as_utc

from conftest import T0, candidate


async def test_upsert_if_absent_is_idempotent(store):
    assert await store.upsert_if_absent(candidate()) is True
    assert await store.upsert_if_absent(candidate()) is False
    # другая пара того же студента даёт отдельную запись
    assert await store.upsert_if_absent(candidate(occurrence_id="occ-2")) is True

    rec = await store.get("s1", "occ-1")
    assert rec.state == ReminderState.PENDING.value
    assert rec.attempts == 0
    assert as_utc(rec.notify_at) == T0
    assert as_utc(rec.next_attempt_at) == T0
    assert (await store.count_by_state())["PENDING"] == 2


async def test_fetch_due_orders_by_notify_at_and_respects_limit(store, clock):
    await store.upsert_if_absent(candidate("s3", start=T0 + timedelta(minutes=15)))
    await store.upsert_if_absent(candidate("s1", start=T0 + timedelta(minutes=5)))
    await store.upsert_if_absent(candidate("s2", start=T0 + timedelta(minutes=10)))
    await store.upsert_if_absent(candidate("later", start=T0 + timedelta(hours=3)))

    clock.advance(minutes=10)
    due = await store.fetch_due(clock(), limit=10)
    assert [r.student_id for r in due] == ["s1", "s2", "s3"]

    due = await store.fetch_due(clock(), limit=2)
    assert [r.student_id for r in due] == ["s1", "s2"]


async def test_fetch_due_skips_records_waiting_for_backoff(store, clock):
    await store.upsert_if_absent(candidate())
    rec = (await store.fetch_due(clock(), 10))[0]

    state = await store.mark_failed(
        rec.id, "503", rec.attempts, max_attempts=3, retry_at=clock() + timedelta(seconds=30)
    )
    assert state == ReminderState.PENDING
    assert await store.fetch_due(clock(), 10) == []

    clock.advance(seconds=30)
    assert [r.id for r in await store.fetch_due(clock(), 10)] == [rec.id]


async def test_transitions_are_compare_and_set(store, clock):
    await store.upsert_if_absent(candidate())
    rec = await store.get("s1", "occ-1")

    assert await store.mark_sent(rec.id, expected_attempts=0) is True
    # второй воркер с устаревшим снимком ничего не меняет
    assert await store.mark_sent(rec.id, expected_attempts=0) is False
    assert await store.mark_failed(rec.id, "late", 0, max_attempts=3) is None
    assert await store.mark_expired(rec.id, 0) is False

    rec = await store.get("s1", "occ-1")
    assert rec.state == ReminderState.SENT.value
    assert rec.attempts == 1
    assert as_utc(rec.sent_at) == clock()


async def test_mark_failed_counts_attempts_until_exhausted(store):
    await store.upsert_if_absent(candidate())
    rec = await store.get("s1", "occ-1")

    assert await store.mark_failed(rec.id, "503", 0, max_attempts=3) == ReminderState.PENDING
    assert await store.mark_failed(rec.id, "503", 1, max_attempts=3) == ReminderState.PENDING
    assert await store.mark_failed(rec.id, "503", 2, max_attempts=3) == ReminderState.FAILED

    rec = await store.get("s1", "occ-1")
    assert rec.attempts == 3
    assert rec.state == ReminderState.FAILED.value
    assert rec.last_error == "503"


async def test_mark_failed_permanent_is_terminal_at_once(store):
    await store.upsert_if_absent(candidate())
    rec = await store.get("s1", "occ-1")

    state = await store.mark_failed(rec.id, "NoValidEndpoint", 0, max_attempts=5, permanent=True)
    assert state == ReminderState.FAILED
    rec = await store.get("s1", "occ-1")
    assert (rec.state, rec.attempts, rec.last_error) == ("FAILED", 1, "NoValidEndpoint")


async def test_delete_older_than_never_touches_pending(store, clock):
    await store.upsert_if_absent(candidate("pending"))
    await store.upsert_if_absent(candidate("sent"))
    sent = await store.get("sent", "occ-1")
    await store.mark_sent(sent.id, 0)

    clock.advance(days=30)
    deleted = await store.delete_older_than(clock(), states=list(ReminderState))
    assert deleted == 1
    assert await store.get("pending", "occ-1") is not None
    assert await store.get("sent", "occ-1") is None


async def test_list_for_student_upcoming_only(store, clock):
    await store.upsert_if_absent(candidate(occurrence_id="past", start=T0 - timedelta(hours=1)))
    await store.upsert_if_absent(candidate(occurrence_id="next", start=T0 + timedelta(hours=1)))
    await store.upsert_if_absent(candidate(occurrence_id="soon", start=T0 + timedelta(minutes=20)))

    upcoming = await store.list_for_student("s1")
    assert [r.occurrence_id for r in upcoming] == ["soon", "next"]
    assert len(await store.list_for_student("s1", upcoming_only=False)) == 3

    assert await store.delete_for_student("s1") == 3
    assert await store.list_for_student("s1", upcoming_only=False) == []


async def test_count_by_state_is_zero_filled(store):
    assert await store.count_by_state() == {"PENDING": 0, "SENT": 0, "FAILED": 0, "EXPIRED": 0}


async def test_storage_errors_become_data_access_error(tmp_path):
    # таблиц нет -> OperationalError от sqlite
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        repo = ReminderRepo(make_sessionmaker(eng))
        with pytest.raises(DataAccessError):
            await repo.fetch_due(T0, 10)
        with pytest.raises(DataAccessError):
            await repo.upsert_if_absent(candidate())
    finally:
        await eng.dispose()
