#!/usr/bin/env python3
"""
Операционные команды пайплайна напоминаний о парах.

Usage:
    python -m class_reminders.cli generate [--hours 24]
    python -m class_reminders.cli send [--limit 500]
    python -m class_reminders.cli stats
    python -m class_reminders.cli cleanup [--days 7]
    python -m class_reminders.cli test --student <id> [--title ... --body ...]
    python -m class_reminders.cli generate-keys
    python -m class_reminders.cli init-db
    python -m class_reminders.cli run

Код выхода: 0 ок, 1 внутренняя ошибка, 2 ошибка конфигурации.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import Optional, Sequence

from class_reminders.config import settings
from class_reminders.container import Services, build_services
from class_reminders.core.logging import mask_endpoint, setup_logging
from class_reminders.db import init_db, make_engine
from class_reminders.errors import ConfigError, DeliveryError, PartialBatchError, PermanentDeliveryError
from class_reminders.services.credentials import generate_vapid_keys
from class_reminders.utils.dates import TimeRange, now_utc

logger = logging.getLogger("class_reminders.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2


def _print(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def cmd_generate(svc: Services, args) -> int:
    hours = args.hours if args.hours is not None else settings.GENERATE_HORIZON_HOURS
    window = TimeRange.ahead(now_utc(), timedelta(hours=hours))
    batch = await svc.generator.generate(window)
    _print(batch.as_dict())
    return EXIT_OK


async def cmd_send(svc: Services, args) -> int:
    due = await svc.reminders.fetch_due(now_utc(), args.limit or settings.DISPATCH_BATCH_SIZE)
    report = await svc.dispatcher.dispatch_batch(due)
    _print({"due": len(due), "outcomes": report.summary(), "errors": len(report.errors)})
    try:
        report.raise_for_errors()
    except PartialBatchError as e:
        logger.error("send: %s", e)
        return EXIT_ERROR
    return EXIT_OK


async def cmd_stats(svc: Services, args) -> int:
    _print(await svc.stats.stats())
    return EXIT_OK


async def cmd_cleanup(svc: Services, args) -> int:
    days = args.days if args.days is not None else settings.REMINDER_RETENTION_DAYS
    _print(await svc.cleanup.cleanup(timedelta(days=days)))
    return EXIT_OK


async def cmd_test(svc: Services, args) -> int:
    """Тестовый пуш на все подписки студента, без записи в class_reminders."""
    subs = await svc.subscriptions.list_for_student(args.student)
    if not subs:
        print(f"no push subscriptions for student {args.student}")
        return EXIT_ERROR

    payload = json.dumps(
        {"title": args.title, "body": args.body, "message": args.body, "type": "test"},
        ensure_ascii=False,
    ).encode("utf-8")

    delivered = 0
    for sub in subs:
        try:
            res = await asyncio.wait_for(
                svc.transport.send(sub, payload, svc.keys),
                timeout=settings.SEND_TIMEOUT_SECONDS,
            )
        except PermanentDeliveryError as e:
            await svc.subscriptions.delete_by_endpoint(sub.endpoint)
            print(f"[gone]  {mask_endpoint(sub.endpoint)} -> {e} (subscription deleted)")
        except (DeliveryError, asyncio.TimeoutError) as e:
            print(f"[fail]  {mask_endpoint(sub.endpoint)} -> {str(e) or 'timeout'}")
        else:
            delivered += 1
            print(f"[ok]    {mask_endpoint(sub.endpoint)} -> {res.status_code}")
    return EXIT_OK if delivered else EXIT_ERROR


async def cmd_init_db(args) -> int:
    engine = make_engine()
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    print("tables created")
    return EXIT_OK


def cmd_generate_keys(args) -> int:
    public, private = generate_vapid_keys()
    print("VAPID Keys Generated:")
    print("=====================")
    print("Public Key:")
    print(public)
    print("\nPrivate Key:")
    print(private)
    print("\nAdd these to your .env file:")
    print("VAPID_PUBLIC_KEY=" + public)
    print("VAPID_PRIVATE_KEY=" + private)
    return EXIT_OK


# команда -> (обработчик, нужны ли VAPID-ключи)
SERVICE_COMMANDS = {
    "generate": (cmd_generate, False),
    "send": (cmd_send, True),
    "stats": (cmd_stats, False),
    "cleanup": (cmd_cleanup, False),
    "test": (cmd_test, True),
}


async def _run_with_services(args) -> int:
    handler, with_delivery = SERVICE_COMMANDS[args.command]
    engine = make_engine()
    try:
        svc = build_services(engine, settings, with_delivery=with_delivery)
        return await handler(svc, args)
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="class_reminders", description="Class reminder push pipeline"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("generate", help="create PENDING reminders for upcoming classes")
    p.add_argument("--hours", type=int, default=None, help="look-ahead window in hours")

    p = sub.add_parser("send", help="deliver due reminders once")
    p.add_argument("--limit", type=int, default=None, help="max records in this batch")

    sub.add_parser("stats", help="count reminders by state")

    p = sub.add_parser("cleanup", help="delete terminal reminders past retention")
    p.add_argument("--days", type=int, default=None, help="retention in days")

    p = sub.add_parser("test", help="send a test push to one student")
    p.add_argument("--student", required=True, help="student id")
    p.add_argument("--title", default="Test Notification")
    p.add_argument("--body", default="This is a test push to your device!")

    sub.add_parser("generate-keys", help="print a fresh VAPID key pair")
    sub.add_parser("init-db", help="create tables (dev only, use alembic in prod)")
    sub.add_parser("run", help="run the scheduler daemon")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if args.command == "generate-keys":
        return cmd_generate_keys(args)
    if args.command == "run":
        from class_reminders.main import main as run_daemon

        runner = run_daemon
    elif args.command == "init-db":
        def runner():
            return cmd_init_db(args)
    else:
        def runner():
            return _run_with_services(args)

    try:
        code = asyncio.run(runner())
    except ConfigError as e:
        logger.error("configuration error: %s", e)
        return EXIT_CONFIG
    except Exception:
        logger.exception("command %s failed", args.command)
        return EXIT_ERROR
    return EXIT_OK if code is None else code


if __name__ == "__main__":
    sys.exit(main())
