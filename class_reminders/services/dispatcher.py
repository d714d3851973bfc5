# class_reminders/services/dispatcher.py
from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Sequence

from class_reminders.core.logging import mask_endpoint
from class_reminders.errors import (
    ConfigError,
    DataAccessError,
    PartialBatchError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from class_reminders.metrics import dispatch_outcomes_total, subscriptions_pruned_total
from class_reminders.models.reminder import ClassReminder, ReminderState
from class_reminders.providers.webpush import PushTransport
from class_reminders.repositories.reminder_repo import ReminderRepo
from class_reminders.repositories.subscription_repo import SubscriptionRepo
from class_reminders.services.backoff import ExponentialBackoff
from class_reminders.services.credentials import VapidKeyPair
from class_reminders.utils.dates import Clock, as_utc, now_utc

logger = logging.getLogger(__name__)

NO_VALID_ENDPOINT = "NoValidEndpoint"


class Outcome(str, enum.Enum):
    SENT = "Sent"
    RETRY = "Retry"
    FAILED = "Failed"
    NO_SUBSCRIPTION = "NoSubscription"
    NO_VALID_ENDPOINT = NO_VALID_ENDPOINT
    EXPIRED = "Expired"
    CONFLICT = "Conflict"
    CANCELLED = "Cancelled"
    ERROR = "Error"


@dataclass
class DispatchReport:
    outcomes: dict[int, Outcome] = field(default_factory=dict)
    errors: list[tuple[int, BaseException]] = field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def summary(self) -> dict[str, int]:
        c = Counter(o.value for o in self.outcomes.values())
        return {o.value: c.get(o.value, 0) for o in Outcome}

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialBatchError(self.errors)


def build_payload(rec: ClassReminder) -> bytes:
    """JSON, который разбирает service worker портала (title/body + data)."""
    body = {
        "title": rec.title,
        "body": rec.message,
        "message": rec.message,
        "type": "class_reminder",
        "notificationId": f"class-reminder-{rec.id}",
        "data": {
            "subjectName": rec.subject_name,
            "classTime": as_utc(rec.scheduled_for).isoformat(),
            "occurrenceId": rec.occurrence_id,
        },
    }
    return json.dumps(body, ensure_ascii=False).encode("utf-8")


class Dispatcher:
    """
    Доставка due-напоминаний по всем push-подпискам студента.

    404/410 -> подписку удаляем; если валидных endpoint'ов не осталось,
    запись терминально FAILED(NoValidEndpoint).
    5xx/429/таймаут -> попытка засчитывается, запись остаётся PENDING
    до исчерпания max_attempts.
    """

    def __init__(
        self,
        store: ReminderRepo,
        subscriptions: SubscriptionRepo,
        transport: PushTransport,
        keys: VapidKeyPair,
        *,
        max_attempts: int,
        backoff: ExponentialBackoff,
        expire_grace: timedelta,
        concurrency: int = 10,
        send_timeout: float = 10.0,
        delivery_mode: str = "fan_out",
        clock: Clock = now_utc,
    ) -> None:
        self.store = store
        self.subscriptions = subscriptions
        self.transport = transport
        self.keys = keys
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.expire_grace = expire_grace
        self.concurrency = concurrency
        self.send_timeout = send_timeout
        self.first_success = delivery_mode == "first_success"
        self.clock = clock

    async def dispatch_batch(
        self,
        records: Sequence[ClassReminder],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchReport:
        report = DispatchReport()
        sem = asyncio.Semaphore(self.concurrency)
        # хранилище/ключи отвалились: не начатые записи не шлём, иначе повтор на следующем тике
        abort = asyncio.Event()

        async def _one(rec: ClassReminder) -> None:
            async with sem:
                if abort.is_set() or (cancel_event is not None and cancel_event.is_set()):
                    report.outcomes[rec.id] = Outcome.CANCELLED
                    return
                try:
                    outcome = await self._dispatch_one(rec)
                except (DataAccessError, ConfigError):
                    abort.set()
                    raise
                except Exception as e:
                    # запись не тронута: PENDING, attempts прежние, повтор на следующем тике
                    logger.exception(
                        "dispatch: unexpected error",
                        extra={"reminder_id": rec.id, "student_id": rec.student_id},
                    )
                    report.errors.append((rec.id, e))
                    outcome = Outcome.ERROR
                report.outcomes[rec.id] = outcome
                dispatch_outcomes_total.labels(outcome=outcome.value).inc()

        results = await asyncio.gather(*(_one(r) for r in records), return_exceptions=True)
        for res in results:
            if isinstance(res, BaseException):
                logger.error(
                    "dispatch: batch aborted, %d record(s) not started",
                    report.count(Outcome.CANCELLED),
                )
                raise res

        if records:
            logger.info("dispatch: %d records -> %s", len(records), {
                k: v for k, v in report.summary().items() if v
            })
        return report

    async def _dispatch_one(self, rec: ClassReminder) -> Outcome:
        ctx = {"reminder_id": rec.id, "student_id": rec.student_id}
        now = self.clock()

        if as_utc(rec.notify_at) + self.expire_grace < now:
            ok = await self.store.mark_expired(rec.id, rec.attempts)
            logger.info("dispatch: overdue, expired", extra=ctx)
            return Outcome.EXPIRED if ok else Outcome.CONFLICT

        subs = await self.subscriptions.list_for_student(rec.student_id)
        if not subs:
            ok = await self.store.mark_expired(rec.id, rec.attempts)
            logger.info("dispatch: no push subscription", extra=ctx)
            return Outcome.NO_SUBSCRIPTION if ok else Outcome.CONFLICT

        payload = build_payload(rec)
        delivered = False
        gone = 0
        transient: list[TransientDeliveryError] = []

        for sub in subs:
            try:
                await asyncio.wait_for(
                    self.transport.send(sub, payload, self.keys),
                    timeout=self.send_timeout,
                )
            except asyncio.TimeoutError:
                transient.append(TransientDeliveryError(f"send timed out after {self.send_timeout}s"))
            except PermanentDeliveryError as e:
                await self.subscriptions.delete_by_endpoint(sub.endpoint)
                subscriptions_pruned_total.inc()
                gone += 1
                logger.info(
                    "dispatch: endpoint gone (%s), subscription deleted: %s",
                    e.status_code, mask_endpoint(sub.endpoint), extra=ctx,
                )
            except TransientDeliveryError as e:
                transient.append(e)
                logger.warning(
                    "dispatch: transient failure %s: %s", mask_endpoint(sub.endpoint), e, extra=ctx
                )
            else:
                delivered = True
                if self.first_success:
                    break

        if delivered:
            ok = await self.store.mark_sent(rec.id, rec.attempts)
            return Outcome.SENT if ok else Outcome.CONFLICT

        if not transient:
            # все наши endpoint'ы мертвы; проверяем, не зарегистрировали ли новый
            remaining = await self.subscriptions.count_for_student(rec.student_id)
            if remaining == 0:
                state = await self.store.mark_failed(
                    rec.id,
                    NO_VALID_ENDPOINT,
                    rec.attempts,
                    max_attempts=self.max_attempts,
                    permanent=True,
                )
                logger.info("dispatch: no valid endpoint left (%d pruned)", gone, extra=ctx)
                return Outcome.NO_VALID_ENDPOINT if state else Outcome.CONFLICT

        retry_after = max((e.retry_after or 0.0 for e in transient), default=0.0)
        reason = str(transient[-1]) if transient else "EndpointGone"
        retry_at = self.backoff.next_attempt_at(now, rec.attempts + 1, retry_after or None)
        state = await self.store.mark_failed(
            rec.id,
            reason,
            rec.attempts,
            max_attempts=self.max_attempts,
            retry_at=retry_at,
        )
        if state is None:
            return Outcome.CONFLICT
        if state == ReminderState.FAILED:
            logger.warning("dispatch: attempts exhausted (%s)", reason, extra=ctx)
            return Outcome.FAILED
        logger.info(
            "dispatch: attempt %d/%d failed (%s), retry at %s",
            rec.attempts + 1, self.max_attempts, reason, retry_at.isoformat(), extra=ctx,
        )
        return Outcome.RETRY
