# class_reminders/web/server.py
from __future__ import annotations

import logging
import os
import platform
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from class_reminders.config import settings
from class_reminders.container import Services, build_services
from class_reminders.db import make_engine
from class_reminders.errors import ConfigError, DataAccessError
from class_reminders.utils.logging import setup_json_logging
from class_reminders.web.errors import data_access_handler, unhandled_exception_handler
from class_reminders.web.middleware_logging import LoggingMiddleware
from class_reminders.web.routes import push_router, reminders_router, router as api_router

log = logging.getLogger("startup")

ServicesFactory = Callable[[], Awaitable[Services]]


async def _default_services() -> Services:
    engine = make_engine()
    try:
        return build_services(engine, settings)
    except ConfigError as e:
        # без ключей веб всё равно нужен: подписки, статус, generate/cleanup
        log.warning("push delivery disabled: %s", e)
        return build_services(engine, settings, with_delivery=False)


def create_app(
    services_factory: Optional[ServicesFactory] = None,
    *,
    admin_token: Optional[str] = None,
    configure_logging: bool = True,
) -> FastAPI:
    app = FastAPI(title="Class Reminders")
    app.state.services = None
    app.state.admin_token = admin_token if admin_token is not None else settings.ADMIN_TOKEN

    # Middleware
    app.add_middleware(LoggingMiddleware)

    # Routers
    app.include_router(api_router)
    app.include_router(reminders_router)
    app.include_router(push_router)
    app.mount("/metrics", make_asgi_app())

    factory = services_factory or _default_services

    @app.on_event("startup")
    async def on_startup():
        if configure_logging:
            setup_json_logging()
        app.state.services = await factory()
        log.info(
            "app_startup | platform=%s python=%s delivery=%s admin_token=%s",
            platform.platform(),
            platform.python_version(),
            app.state.services.dispatcher is not None,
            bool(app.state.admin_token),
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        svc: Optional[Services] = app.state.services
        if svc is not None:
            await svc.engine.dispose()

    @app.exception_handler(DataAccessError)
    async def _storage(request, exc: DataAccessError):
        return await data_access_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled(request, exc):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation(request, exc: RequestValidationError):
        rid = getattr(request.state, "request_id", "-")
        logging.getLogger("errors").warning(
            "validation_error rid=%s detail=%s", rid, exc.errors()
        )
        return JSONResponse(
            {"ok": False, "error": "validation_error", "detail": jsonable_errors(exc), "rid": rid},
            status_code=422,
        )

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    # в ctx у pydantic v2 бывают исключения, они не сериализуются
    return [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "class_reminders.web.server:app",
        host=settings.WEBAPP_HOST,
        port=int(settings.WEBAPP_PORT),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        access_log=True,
    )
