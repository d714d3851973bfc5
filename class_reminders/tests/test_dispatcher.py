import asyncio
import json
from datetime import timedelta

import pytest

from class_reminders.errors import (
    DataAccessError,
    PartialBatchError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from class_reminders.services.dispatcher import NO_VALID_ENDPOINT, Outcome, build_payload
from class_reminders.utils.dates import as_utc

from conftest import FakeTransport, T0, candidate, never_returns, subscribe

GONE = PermanentDeliveryError("push service responded 410", status_code=410)


def unavailable(retry_after=None):
    return TransientDeliveryError(
        "push service responded 503", status_code=503, retry_after=retry_after
    )


async def _due(store, clock):
    return await store.fetch_due(clock(), 100)


async def test_delivers_to_every_subscription_in_fan_out_mode(store, subs, transport, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/a")
    await subscribe(subs, "s1", "https://push.example/b")

    report = await make_dispatcher().dispatch_batch(await _due(store, clock))

    assert report.count(Outcome.SENT) == 1
    assert sorted(e for e, _ in transport.calls) == ["https://push.example/a", "https://push.example/b"]
    rec = await store.get("s1", "occ-1")
    assert (rec.state, rec.attempts, rec.last_error) == ("SENT", 1, None)


async def test_first_success_stops_after_one_delivery(store, subs, transport, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/a")
    await subscribe(subs, "s1", "https://push.example/b")

    report = await make_dispatcher(delivery_mode="first_success").dispatch_batch(await _due(store, clock))

    assert report.count(Outcome.SENT) == 1
    assert len(transport.calls) == 1


async def test_gone_endpoint_fails_record_and_drops_subscription(store, subs, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/dead")
    transport = FakeTransport({"https://push.example/dead": [GONE]})

    report = await make_dispatcher(transport=transport).dispatch_batch(await _due(store, clock))

    rec = await store.get("s1", "occ-1")
    assert report.outcomes[rec.id] == Outcome.NO_VALID_ENDPOINT
    assert (rec.state, rec.attempts, rec.last_error) == ("FAILED", 1, NO_VALID_ENDPOINT)
    assert await subs.count_for_student("s1") == 0


async def test_gone_endpoint_with_a_live_one_still_sends(store, subs, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/dead")
    await subscribe(subs, "s1", "https://push.example/live")
    transport = FakeTransport({"https://push.example/dead": [GONE]})

    await make_dispatcher(transport=transport).dispatch_batch(await _due(store, clock))

    assert (await store.get("s1", "occ-1")).state == "SENT"
    assert [s.endpoint for s in await subs.list_for_student("s1")] == ["https://push.example/live"]


async def test_transient_failures_retry_until_attempts_run_out(store, subs, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/a")
    transport = FakeTransport({"https://push.example/a": [unavailable()]})
    dispatcher = make_dispatcher(transport=transport)

    report = await dispatcher.dispatch_batch(await _due(store, clock))
    rec = await store.get("s1", "occ-1")
    assert report.outcomes[rec.id] == Outcome.RETRY
    assert (rec.state, rec.attempts) == ("PENDING", 1)
    assert as_utc(rec.next_attempt_at) == clock() + timedelta(seconds=30)
    # бэкофф ещё не прошёл
    assert await _due(store, clock) == []

    clock.advance(seconds=30)
    report = await dispatcher.dispatch_batch(await _due(store, clock))
    rec = await store.get("s1", "occ-1")
    assert report.outcomes[rec.id] == Outcome.RETRY
    assert (rec.state, rec.attempts) == ("PENDING", 2)
    assert as_utc(rec.next_attempt_at) == clock() + timedelta(seconds=60)

    clock.advance(seconds=60)
    report = await dispatcher.dispatch_batch(await _due(store, clock))
    rec = await store.get("s1", "occ-1")
    assert report.outcomes[rec.id] == Outcome.FAILED
    assert (rec.state, rec.attempts) == ("FAILED", 3)
    assert "503" in rec.last_error
    assert len(transport.calls) == 3


async def test_retry_after_from_push_service_is_honoured(store, subs, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/a")
    transport = FakeTransport({"https://push.example/a": [unavailable(retry_after=600)]})

    await make_dispatcher(transport=transport).dispatch_batch(await _due(store, clock))

    rec = await store.get("s1", "occ-1")
    assert as_utc(rec.next_attempt_at) == clock() + timedelta(seconds=600)


async def test_no_subscription_expires_record(store, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())

    report = await make_dispatcher().dispatch_batch(await _due(store, clock))

    rec = await store.get("s1", "occ-1")
    assert report.outcomes[rec.id] == Outcome.NO_SUBSCRIPTION
    assert (rec.state, rec.attempts) == ("EXPIRED", 0)


async def test_overdue_record_expires_without_sending(store, subs, transport, clock, make_dispatcher):
    await store.upsert_if_absent(candidate(start=T0 - timedelta(hours=2)))
    await subscribe(subs, "s1", "https://push.example/a")

    report = await make_dispatcher(expire_grace=timedelta(minutes=5)).dispatch_batch(
        await _due(store, clock)
    )

    assert report.count(Outcome.EXPIRED) == 1
    assert transport.calls == []
    assert (await store.get("s1", "occ-1")).state == "EXPIRED"


async def test_send_timeout_counts_as_transient(store, subs, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/slow")
    transport = FakeTransport({"https://push.example/slow": [never_returns]})

    report = await make_dispatcher(transport=transport, send_timeout=0.05).dispatch_batch(
        await _due(store, clock)
    )

    rec = await store.get("s1", "occ-1")
    assert report.outcomes[rec.id] == Outcome.RETRY
    assert (rec.state, rec.attempts, rec.last_error) == ("PENDING", 1, None)


async def test_lost_race_reports_conflict(store, subs, transport, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/a")
    stale = await _due(store, clock)
    # другой воркер успел отправить
    await store.mark_sent(stale[0].id, 0)

    report = await make_dispatcher().dispatch_batch(stale)

    assert report.outcomes[stale[0].id] == Outcome.CONFLICT
    rec = await store.get("s1", "occ-1")
    assert (rec.state, rec.attempts) == ("SENT", 1)


async def test_cancelled_batch_leaves_records_untouched(store, subs, transport, clock, make_dispatcher):
    await store.upsert_if_absent(candidate("s1"))
    await store.upsert_if_absent(candidate("s2"))
    await subscribe(subs, "s1", "https://push.example/a")
    cancel = asyncio.Event()
    cancel.set()

    report = await make_dispatcher().dispatch_batch(await _due(store, clock), cancel_event=cancel)

    assert report.count(Outcome.CANCELLED) == 2
    assert transport.calls == []
    assert (await store.count_by_state())["PENDING"] == 2


async def test_unexpected_error_is_isolated_to_its_record(store, subs, clock, make_dispatcher):
    await store.upsert_if_absent(candidate("s1"))
    await store.upsert_if_absent(candidate("s2"))
    await subscribe(subs, "s1", "https://push.example/broken")
    await subscribe(subs, "s2", "https://push.example/ok")
    transport = FakeTransport({"https://push.example/broken": [RuntimeError("boom")]})

    report = await make_dispatcher(transport=transport).dispatch_batch(await _due(store, clock))

    broken = await store.get("s1", "occ-1")
    assert report.outcomes[broken.id] == Outcome.ERROR
    assert (broken.state, broken.attempts) == ("PENDING", 0)
    assert (await store.get("s2", "occ-1")).state == "SENT"
    assert report.partial
    with pytest.raises(PartialBatchError) as exc:
        report.raise_for_errors()
    assert exc.value.errors[0][0] == broken.id


async def test_storage_outage_aborts_the_batch(store, clock, make_dispatcher):
    await store.upsert_if_absent(candidate())

    class DownSubscriptions:
        async def list_for_student(self, student_id):
            raise DataAccessError("subscription store unavailable")

    dispatcher = make_dispatcher()
    dispatcher.subscriptions = DownSubscriptions()
    with pytest.raises(DataAccessError):
        await dispatcher.dispatch_batch(await _due(store, clock))


async def test_stats_after_mixed_batch(store, subs, clock, make_dispatcher):
    from class_reminders.services.stats_service import StatsService

    for sid in ("s1", "s2", "s3"):
        await store.upsert_if_absent(candidate(sid))
    await subscribe(subs, "s1", "https://push.example/ok")
    await subscribe(subs, "s2", "https://push.example/gone-2")
    await subscribe(subs, "s3", "https://push.example/gone-3")
    transport = FakeTransport({
        "https://push.example/gone-2": [GONE],
        "https://push.example/gone-3": [GONE],
    })

    await make_dispatcher(transport=transport).dispatch_batch(await _due(store, clock))

    assert await StatsService(store).stats() == {
        "pending": 0, "sent": 1, "failed": 2, "expired": 0, "total": 3,
    }


async def test_payload_carries_title_message_and_class_data(store):
    await store.upsert_if_absent(candidate(subject_name="Biology", message="Biology in 5"))
    rec = await store.get("s1", "occ-1")

    body = json.loads(build_payload(rec))
    assert body["title"] == "Class Reminder"
    assert body["body"] == body["message"] == "Biology in 5"
    assert body["type"] == "class_reminder"
    assert body["data"]["subjectName"] == "Biology"
    assert body["data"]["occurrenceId"] == "occ-1"
    assert body["data"]["classTime"].startswith("2025-10-20T08:05:00")


async def test_storage_outage_stops_sending_the_rest_of_the_batch(
    store, subs, transport, clock, make_dispatcher, monkeypatch
):
    for sid in ("s1", "s2", "s3"):
        await store.upsert_if_absent(candidate(sid))
        await subscribe(subs, sid, f"https://push.example/{sid}")

    async def store_down(*args, **kwargs):
        raise DataAccessError("reminder store unavailable")

    monkeypatch.setattr(store, "mark_sent", store_down)
    dispatcher = make_dispatcher(concurrency=1)

    with pytest.raises(DataAccessError):
        await dispatcher.dispatch_batch(await _due(store, clock))

    # первый пуш ушёл до сбоя, остальные не отправлялись
    assert len(transport.calls) == 1
    assert (await store.count_by_state())["PENDING"] == 3


async def test_default_attempt_budget_reaches_failed_before_expiry(store, subs, clock, make_dispatcher):
    from class_reminders.config import Settings
    from class_reminders.services.backoff import ExponentialBackoff

    settings = Settings(_env_file=None)
    await store.upsert_if_absent(candidate())
    await subscribe(subs, "s1", "https://push.example/a")
    transport = FakeTransport({"https://push.example/a": [unavailable()]})
    dispatcher = make_dispatcher(
        transport=transport,
        max_attempts=settings.REMINDER_MAX_ATTEMPTS,
        backoff=ExponentialBackoff.from_settings(settings),
        expire_grace=settings.expire_grace,
    )

    # тики раз в DISPATCH_INTERVAL_SECONDS, пока запись не станет терминальной
    for _ in range(20):
        await dispatcher.dispatch_batch(await _due(store, clock))
        if (await store.get("s1", "occ-1")).state != "PENDING":
            break
        clock.advance(seconds=settings.DISPATCH_INTERVAL_SECONDS)

    rec = await store.get("s1", "occ-1")
    assert (rec.state, rec.attempts) == ("FAILED", settings.REMINDER_MAX_ATTEMPTS)
    assert "503" in rec.last_error
