# class_reminders/models/reminder.py
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from class_reminders.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReminderState(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_STATES = frozenset({ReminderState.SENT, ReminderState.FAILED, ReminderState.EXPIRED})


class ClassReminder(Base):
    __tablename__ = "class_reminders"
    __table_args__ = (
        # одна запись на (студент, конкретная пара)
        UniqueConstraint("student_id", "occurrence_id", name="uq_class_reminders_identity"),
        Index("ix_class_reminders_due", "state", "notify_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    occurrence_id: Mapped[str] = mapped_column(String(96), nullable=False)

    subject_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    title: Mapped[str] = mapped_column(String(128), nullable=False, default="Class Reminder")
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notify_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default=ReminderState.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<ClassReminder id={self.id} student_id={self.student_id} "
            f"occurrence_id={self.occurrence_id} state={self.state} attempts={self.attempts}>"
        )
