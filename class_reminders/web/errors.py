# class_reminders/web/errors.py
from __future__ import annotations
import logging
from fastapi import Request
from fastapi.responses import JSONResponse

from class_reminders.errors import DataAccessError

log = logging.getLogger("errors")


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = getattr(request.state, "request_id", "-")
    log.error(
        "unhandled_exception rid=%s path=%s error=%r", rid, request.url.path, exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    # не палим детали наружу, но даем признак
    return JSONResponse({"ok": False, "error": "internal_error", "rid": rid}, status_code=500)


async def data_access_handler(request: Request, exc: DataAccessError):
    rid = getattr(request.state, "request_id", "-")
    log.error("storage_unavailable rid=%s path=%s error=%s", rid, request.url.path, exc)
    return JSONResponse({"ok": False, "error": "storage_unavailable", "rid": rid}, status_code=503)
