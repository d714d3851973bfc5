from __future__ import annotations
import math
from datetime import timedelta
from typing import Optional

from pydantic import Field, AliasChoices, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DELIVERY_MODES = ("fan_out", "first_success")


def _strip_or_none(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class Settings(BaseSettings):
    # === Storage / DB ===
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "POSTGRES_DSN"),
    )
    SQL_ECHO: bool = False

    # === VAPID (генерируются отдельно: python -m class_reminders.cli generate-keys) ===
    VAPID_PUBLIC_KEY: Optional[str] = None
    VAPID_PRIVATE_KEY: Optional[str] = None
    VAPID_SUBJECT: str = "mailto:admin@example.com"

    # === Напоминания ===
    REMINDER_LEAD_MINUTES: int = 5
    REMINDER_MAX_ATTEMPTS: int = 3
    REMINDER_RETENTION_DAYS: int = 7
    REMINDER_EXPIRE_GRACE_MINUTES: Optional[int] = None  # None -> = lead (пара уже началась)
    GENERATE_HORIZON_HOURS: int = 24

    # === Планировщик ===
    SCHEDULER_TZ: str = "UTC"
    DISPATCH_INTERVAL_SECONDS: int = 60
    CLEANUP_INTERVAL_HOURS: int = 24

    # === Доставка ===
    DISPATCH_BATCH_SIZE: int = 500
    SEND_CONCURRENCY: int = 10
    GENERATE_CONCURRENCY: int = 5
    SEND_TIMEOUT_SECONDS: float = 10.0
    PUSH_TTL_SECONDS: int = 300
    DELIVERY_MODE: str = Field("fan_out", description="fan_out | first_success")

    BACKOFF_BASE_SECONDS: float = 30.0
    BACKOFF_FACTOR: float = 2.0
    BACKOFF_MAX_SECONDS: float = 900.0

    # === Веб ===
    ADMIN_TOKEN: Optional[str] = None
    WEBAPP_HOST: str = "0.0.0.0"
    WEBAPP_PORT: int = 8080

    # === Логи ===
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_sql: str = Field(default="WARNING", alias="LOG_SQL")
    log_apscheduler: str = Field(default="WARNING", alias="LOG_APSCHEDULER")

    @field_validator("VAPID_PUBLIC_KEY", "VAPID_PRIVATE_KEY", "ADMIN_TOKEN", mode="before")
    @classmethod
    def _v_blank(cls, v):
        return _strip_or_none(v)

    @field_validator("DELIVERY_MODE", mode="before")
    @classmethod
    def _v_mode(cls, v):
        mode = str(v or "fan_out").strip().lower()
        if mode not in DELIVERY_MODES:
            raise ValueError(f"DELIVERY_MODE must be one of {DELIVERY_MODES}, got {v!r}")
        return mode

    @model_validator(mode="after")
    def _check_limits(self):
        if self.REMINDER_MAX_ATTEMPTS < 1:
            raise ValueError("REMINDER_MAX_ATTEMPTS must be >= 1")
        if self.REMINDER_LEAD_MINUTES < 0:
            raise ValueError("REMINDER_LEAD_MINUTES must be >= 0")
        if self.SEND_CONCURRENCY < 1 or self.GENERATE_CONCURRENCY < 1:
            raise ValueError("concurrency limits must be >= 1")
        if self.DISPATCH_INTERVAL_SECONDS < 1:
            raise ValueError("DISPATCH_INTERVAL_SECONDS must be >= 1")
        if self.SEND_TIMEOUT_SECONDS <= 0:
            raise ValueError("SEND_TIMEOUT_SECONDS must be > 0")
        if self.REMINDER_EXPIRE_GRACE_MINUTES is None:
            self.REMINDER_EXPIRE_GRACE_MINUTES = self.REMINDER_LEAD_MINUTES
        # все попытки должны успеть до истечения grace, иначе запись уйдёт в EXPIRED
        if self.REMINDER_MAX_ATTEMPTS > 1 and self.retry_window > self.expire_grace:
            raise ValueError(
                f"REMINDER_MAX_ATTEMPTS={self.REMINDER_MAX_ATTEMPTS} does not fit into the expiry grace: "
                f"retries need up to {int(self.retry_window.total_seconds())}s, "
                f"grace is {int(self.expire_grace.total_seconds())}s"
            )
        return self

    # ---- удобные timedelta-обёртки ----
    @property
    def lead_time(self) -> timedelta:
        return timedelta(minutes=self.REMINDER_LEAD_MINUTES)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.REMINDER_RETENTION_DAYS)

    @property
    def expire_grace(self) -> timedelta:
        return timedelta(minutes=self.REMINDER_EXPIRE_GRACE_MINUTES or 0)

    @property
    def generate_horizon(self) -> timedelta:
        return timedelta(hours=self.GENERATE_HORIZON_HOURS)

    @property
    def retry_window(self) -> timedelta:
        """
        Худший случай от notify_at до последней попытки: первый тик плюс
        паузы бэкоффа, каждая округлена вверх до интервала тика.
        """
        tick = self.DISPATCH_INTERVAL_SECONDS
        total = tick
        for failed in range(1, self.REMINDER_MAX_ATTEMPTS):
            delay = min(
                self.BACKOFF_BASE_SECONDS * self.BACKOFF_FACTOR ** (failed - 1),
                self.BACKOFF_MAX_SECONDS,
            )
            total += math.ceil(delay / tick) * tick
        return timedelta(seconds=total)

    @property
    def push_http_timeout(self) -> tuple[float, float]:
        # (connect, read) для requests; в сумме меньше SEND_TIMEOUT_SECONDS,
        # чтобы поток с webpush заканчивался раньше, чем wait_for бросит запрос
        part = round(self.SEND_TIMEOUT_SECONDS * 0.4, 3)
        return part, part

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


settings = Settings()
