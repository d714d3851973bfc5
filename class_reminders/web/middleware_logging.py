# class_reminders/web/middleware_logging.py
from __future__ import annotations
import logging, time, uuid
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

log = logging.getLogger("http")

# /metrics дёргает Prometheus раз в 15с, /health дёргает балансер; в INFO это шум
QUIET_PATHS = ("/metrics", "/health")


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = rid
        path = request.url.path
        level = logging.DEBUG if path.startswith(QUIET_PATHS) else logging.INFO
        started = time.perf_counter()

        log.log(level, "http_request", extra={
            "rid": rid,
            "method": request.method,
            "path": path,
            "admin": "x-admin-token" in request.headers,
        })
        try:
            response: Response = await call_next(request)
        except Exception:
            log.exception("http_error", extra={
                "rid": rid, "path": path, "ms": round((time.perf_counter() - started) * 1000, 2)
            })
            raise

        ms = round((time.perf_counter() - started) * 1000, 2)
        if response.status_code >= 500:
            level = logging.WARNING
        log.log(level, "http_response", extra={"rid": rid, "status": response.status_code, "ms": ms})
        response.headers["x-request-id"] = rid
        return response
