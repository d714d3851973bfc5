# class_reminders/web/routes.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from class_reminders.container import Services
from class_reminders.core.logging import mask_endpoint
from class_reminders.utils.dates import TimeRange, now_utc
from class_reminders.web.schemas import ReminderOut, SubscribeRequest, UnsubscribeRequest

log = logging.getLogger("class_reminders.web")

router = APIRouter()
reminders_router = APIRouter(prefix="/class-reminders", tags=["class-reminders"])
push_router = APIRouter(prefix="/push", tags=["push"])


def get_services(request: Request) -> Services:
    svc = getattr(request.app.state, "services", None)
    if svc is None:
        raise HTTPException(status_code=503, detail="services not ready")
    return svc


async def require_admin(request: Request, x_admin_token: Optional[str] = Header(default=None)):
    # ADMIN_TOKEN не задан -> ручки открыты (dev), авторизацию делает портал
    token = getattr(request.app.state, "admin_token", None)
    if token and x_admin_token != token:
        raise HTTPException(status_code=401, detail="admin token required")


@router.get("/health")
async def health():
    return {"status": "ok"}


# ---------- class reminders (админка) ----------

@reminders_router.get("/status", dependencies=[Depends(require_admin)])
async def status(svc: Services = Depends(get_services)):
    stats = await svc.stats.stats()
    return {
        "ok": True,
        "data": {
            **stats,
            "deliveryEnabled": svc.dispatcher is not None,
            "systemStatus": "active",
        },
    }


@reminders_router.post("/generate", dependencies=[Depends(require_admin)])
async def generate(
    hours: Optional[int] = Query(default=None, ge=1, le=24 * 14),
    svc: Services = Depends(get_services),
):
    span = timedelta(hours=hours) if hours else svc.settings.generate_horizon
    batch = await svc.generator.generate(TimeRange.ahead(now_utc(), span))
    return {"ok": True, "data": batch.as_dict()}


@reminders_router.post("/send", dependencies=[Depends(require_admin)])
async def send(svc: Services = Depends(get_services)):
    if svc.dispatcher is None:
        raise HTTPException(status_code=503, detail="push delivery is not configured")
    due = await svc.reminders.fetch_due(now_utc(), svc.settings.DISPATCH_BATCH_SIZE)
    report = await svc.dispatcher.dispatch_batch(due)
    return {
        "ok": not report.partial,
        "data": {"due": len(due), "outcomes": report.summary(), "errors": len(report.errors)},
    }


@reminders_router.post("/cleanup", dependencies=[Depends(require_admin)])
async def cleanup(
    days: Optional[int] = Query(default=None, ge=0),
    svc: Services = Depends(get_services),
):
    retention = timedelta(days=days) if days is not None else svc.settings.retention
    return {"ok": True, "data": await svc.cleanup.cleanup(retention)}


# запросы от имени самого студента проксирует портал со своим токеном
@reminders_router.get("/student/{student_id}", dependencies=[Depends(require_admin)])
async def student_reminders(
    student_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    svc: Services = Depends(get_services),
):
    items = await svc.reminders.list_for_student(student_id, upcoming_only=True, limit=limit)
    return {"ok": True, "data": [ReminderOut.model_validate(r).model_dump(mode="json") for r in items]}


@reminders_router.delete("/student/{student_id}", dependencies=[Depends(require_admin)])
async def clear_student_reminders(student_id: str, svc: Services = Depends(get_services)):
    deleted = await svc.reminders.delete_for_student(student_id)
    return {"ok": True, "data": {"deleted": deleted}}


# ---------- push subscriptions ----------

@push_router.get("/vapid-public-key")
async def vapid_public_key(svc: Services = Depends(get_services)):
    if svc.keys is None:
        raise HTTPException(status_code=503, detail="push delivery is not configured")
    return {"ok": True, "data": {"publicKey": svc.keys.public_key}}


@push_router.post("/subscriptions", status_code=201)
async def subscribe(body: SubscribeRequest, svc: Services = Depends(get_services)):
    sub = await svc.subscriptions.upsert(
        student_id=body.student_id,
        endpoint=body.subscription.endpoint,
        p256dh=body.subscription.keys.p256dh,
        auth=body.subscription.keys.auth,
        user_agent=body.user_agent,
    )
    log.info("push subscribed: student=%s endpoint=%s", sub.student_id, mask_endpoint(sub.endpoint))
    return {"ok": True, "data": {"id": sub.id, "studentId": sub.student_id}}


@push_router.delete("/subscriptions")
async def unsubscribe(body: UnsubscribeRequest, svc: Services = Depends(get_services)):
    deleted = await svc.subscriptions.delete_by_endpoint(body.endpoint)
    if not deleted:
        raise HTTPException(status_code=404, detail="subscription not found")
    return {"ok": True}
