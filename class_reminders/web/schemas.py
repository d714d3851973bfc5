# class_reminders/web/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PushKeys(BaseModel):
    p256dh: str = Field(min_length=1, max_length=255)
    auth: str = Field(min_length=1, max_length=255)


class BrowserSubscription(BaseModel):
    """Ровно то, что отдаёт PushSubscription.toJSON() в браузере."""
    endpoint: str = Field(min_length=8)
    keys: PushKeys
    expirationTime: Optional[float] = None


class SubscribeRequest(BaseModel):
    student_id: str = Field(alias="studentId", min_length=1, max_length=64)
    subscription: BrowserSubscription
    user_agent: Optional[str] = Field(default=None, alias="userAgent", max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=8)


class ReminderOut(BaseModel):
    id: int
    student_id: str
    occurrence_id: str
    subject_name: str
    message: str
    scheduled_for: datetime
    notify_at: datetime
    state: str
    attempts: int
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
