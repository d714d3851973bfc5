# class_reminders/utils/logging.py
from __future__ import annotations
import logging
import os
import sys

from pythonjsonlogger import jsonlogger

from class_reminders.core.logging import CtxFilter


def setup_json_logging():
    """Логи веб-процесса: uvicorn навешивает свои хендлеры, перестраиваем root."""
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    json_mode = str(os.getenv("LOG_JSON", "false")).lower() in {"1", "true", "yes"}
    root = logging.getLogger()
    root.setLevel(level)

    # зачистим хендлеры (uvicorn любит навешивать свои)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CtxFilter())

    if json_mode:
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            json_ensure_ascii=False,
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    root.addHandler(handler)

    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)

    logging.getLogger(__name__).info(
        "logging_ready", extra={"json": json_mode, "level": logging.getLevelName(level)}
    )
