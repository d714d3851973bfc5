# class_reminders/errors.py
from __future__ import annotations

from typing import Optional, Sequence


class ReminderError(Exception):
    """Базовое исключение пайплайна напоминаний."""


class ConfigError(ReminderError):
    """Нет/битые ключи или настройки. Фатально на старте."""


class DataAccessError(ReminderError):
    """Хранилище недоступно. Текущий тик прерывается, повтор на следующем."""


class DeliveryError(ReminderError):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """5xx / 429 / таймаут: подписка валидна, пробуем позже."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """404 / 410: endpoint умер, подписку надо удалить."""


class PartialBatchError(ReminderError):
    """Часть записей в батче упала. Не фатально, только отчёт."""

    def __init__(self, errors: Sequence[tuple[int, BaseException]]):
        self.errors = list(errors)
        super().__init__(f"{len(self.errors)} record(s) failed in batch")
