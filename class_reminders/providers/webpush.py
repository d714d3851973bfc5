# class_reminders/providers/webpush.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional, Protocol, Union

import requests
from pywebpush import WebPushException, webpush

from class_reminders.core.logging import mask_endpoint
from class_reminders.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from class_reminders.models.push_subscription import PushSubscription
from class_reminders.services.credentials import VapidKeyPair

logger = logging.getLogger(__name__)

# endpoint больше не существует -> подписку удаляем
PERMANENT_STATUSES = frozenset({404, 410})


@dataclass(frozen=True)
class DeliveryResult:
    status_code: int


class PushTransport(Protocol):
    async def send(
        self, subscription: PushSubscription, payload: bytes, keys: VapidKeyPair
    ) -> DeliveryResult:
        """Успех -> DeliveryResult, иначе Transient/PermanentDeliveryError."""
        ...


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After бывает в секундах или HTTP-датой."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def error_for_status(
    status_code: int, headers: Optional[Mapping[str, str]] = None, detail: str = ""
) -> DeliveryError:
    """
    404/410 значит постоянная ошибка. Всё остальное (429, 5xx, прочие 4xx)
    считаем временной: подписка может быть живой, попытки ограничены бюджетом.
    """
    msg = f"push service responded {status_code}"
    if detail:
        msg = f"{msg}: {detail[:120]}"
    if status_code in PERMANENT_STATUSES:
        return PermanentDeliveryError(msg, status_code=status_code)
    retry_after = parse_retry_after((headers or {}).get("Retry-After"))
    return TransientDeliveryError(msg, status_code=status_code, retry_after=retry_after)


class WebPushTransport:
    """Web Push (RFC 8030 + VAPID RFC 8292) через pywebpush. Блокирующий requests уводим в поток."""

    def __init__(self, *, ttl: int = 300, timeout: Union[float, tuple[float, float]] = (4.0, 4.0)) -> None:
        self.ttl = ttl
        self.timeout = timeout

    def _send_sync(self, info: dict, payload: bytes, keys: VapidKeyPair) -> DeliveryResult:
        try:
            resp = webpush(
                subscription_info=info,
                data=payload,
                vapid_private_key=keys.private_key,
                vapid_claims=keys.claims(),
                ttl=self.ttl,
                timeout=self.timeout,
            )
        except WebPushException as e:
            resp = e.response
            if resp is None or getattr(resp, "status_code", None) is None:
                raise TransientDeliveryError(f"webpush failed: {e.message}") from e
            raise error_for_status(resp.status_code, resp.headers, getattr(resp, "text", "")) from e
        except requests.exceptions.RequestException as e:
            raise TransientDeliveryError(f"transport error: {e.__class__.__name__}") from e
        return DeliveryResult(status_code=resp.status_code)

    async def send(
        self, subscription: PushSubscription, payload: bytes, keys: VapidKeyPair
    ) -> DeliveryResult:
        logger.debug("webpush send -> %s", mask_endpoint(subscription.endpoint))
        return await asyncio.to_thread(
            self._send_sync, subscription.subscription_info(), payload, keys
        )
