from .base import Base
from .reminder import ClassReminder, ReminderState, TERMINAL_STATES
from .push_subscription import PushSubscription
from .timetable import TimetableSlot, Student

__all__ = ["Base", "ClassReminder", "ReminderState", "TERMINAL_STATES", "PushSubscription", "TimetableSlot", "Student"]
