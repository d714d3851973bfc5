# class_reminders/models/timetable.py
"""
Таблицы портала (расписание и студенты). Сервис их только читает,
CRUD живёт в основном приложении.
"""
from __future__ import annotations

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from class_reminders.models.base import Base


class TimetableSlot(Base):
    __tablename__ = "timetable_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    section: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    semester: Mapped[int] = mapped_column(Integer, nullable=False)

    weekday: Mapped[str] = mapped_column(String(16), nullable=False)  # monday..saturday
    hour: Mapped[int] = mapped_column(Integer, nullable=False)        # номер пары 1..7
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="lecture")  # lecture | lab | special
    subject_name: Mapped[str | None] = mapped_column(String(128), nullable=True)


class Student(Base):
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    section: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    semester: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
