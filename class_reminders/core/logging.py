import logging
import sys
import os
from logging.config import dictConfig


CTX_FIELDS = ("tick", "reminder_id", "student_id")


def setup_logging() -> None:
    """Базовая настройка логирования всего приложения."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    json_fmt = os.getenv("LOG_JSON", "0").lower() in {"1", "true", "yes"}

    if json_fmt:
        fmt = (
            '{"ts":"%(asctime)s","lvl":"%(levelname)s","name":"%(name)s",'
            '"msg":"%(message)s","tick":"%(tick)s",'
            '"reminder_id":"%(reminder_id)s","student_id":"%(student_id)s"}'
        )
    else:
        fmt = (
            "%(asctime)s | %(levelname)5s | %(name)s | %(message)s "
            "| tick=%(tick)s rem=%(reminder_id)s student=%(student_id)s"
        )

    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"ctx": {"()": CtxFilter}},
        "formatters": {"default": {"format": fmt}},
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "default",
                "filters": ["ctx"],
            }
        },
        "root": {"level": level, "handlers": ["stdout"]},
        "loggers": {
            # SQL-запросы только при отладке
            "sqlalchemy.engine": {
                "level": os.getenv("LOG_SQL", "WARNING").upper()
            },
            # apscheduler на INFO пишет каждый запуск джобы
            "apscheduler": {
                "level": os.getenv("LOG_APSCHEDULER", "WARNING").upper()
            },
            "class_reminders": {"level": level},
        },
    })


class CtxFilter(logging.Filter):
    """Добавляет безопасные поля, чтобы форматтер не падал, когда нет extra."""
    def filter(self, record: logging.LogRecord) -> bool:
        for k in CTX_FIELDS:
            if not hasattr(record, k):
                setattr(record, k, "-")
        return True


def mask_endpoint(endpoint: str, keep: int = 32) -> str:
    """Endpoint содержит токен устройства, в логи пишем только начало."""
    if len(endpoint) <= keep:
        return endpoint
    return endpoint[:keep] + "..."
