from datetime import timedelta

from class_reminders.services.cleanup_service import CleanupService
from class_reminders.services.stats_service import StatsService

from conftest import T0, candidate


async def _seed(store):
    for sid in ("sent", "failed", "expired", "pending"):
        await store.upsert_if_absent(candidate(sid, start=T0 - timedelta(days=1)))
    await store.mark_sent((await store.get("sent", "occ-1")).id, 0)
    await store.mark_failed((await store.get("failed", "occ-1")).id, "x", 0, max_attempts=1)
    await store.mark_expired((await store.get("expired", "occ-1")).id, 0)


async def test_cleanup_removes_only_terminal_records_past_retention(store, clock):
    await _seed(store)
    clock.advance(days=8)

    result = await CleanupService(store, clock=clock).cleanup(timedelta(days=7))

    assert result == {"deleted": 3}
    counts = await store.count_by_state()
    assert counts == {"PENDING": 1, "SENT": 0, "FAILED": 0, "EXPIRED": 0}


async def test_cleanup_keeps_records_inside_retention(store, clock):
    await _seed(store)
    # ровно на границе ещё не удаляем
    clock.advance(days=7)

    assert await CleanupService(store, clock=clock).cleanup(timedelta(days=7)) == {"deleted": 0}


async def test_pending_survives_any_retention(store, clock):
    await store.upsert_if_absent(candidate())
    clock.advance(days=365)

    assert await CleanupService(store, clock=clock).cleanup(timedelta(0)) == {"deleted": 0}
    assert (await store.get("s1", "occ-1")).state == "PENDING"


async def test_stats_counts_every_state(store):
    await _seed(store)

    assert await StatsService(store).stats() == {
        "pending": 1, "sent": 1, "failed": 1, "expired": 1, "total": 4,
    }
