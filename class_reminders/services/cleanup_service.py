# class_reminders/services/cleanup_service.py
import logging
from datetime import timedelta

from class_reminders.metrics import cleanup_deleted_total
from class_reminders.models.reminder import TERMINAL_STATES
from class_reminders.repositories.reminder_repo import ReminderRepo
from class_reminders.utils.dates import Clock, now_utc

logger = logging.getLogger(__name__)


class CleanupService:
    def __init__(self, store: ReminderRepo, clock: Clock = now_utc):
        self.store = store
        self.clock = clock

    async def cleanup(self, retention: timedelta) -> dict:
        """
        Удаляет SENT/FAILED/EXPIRED, не обновлявшиеся дольше retention.
        PENDING не трогаем: сначала они должны дойти до терминального состояния.
        """
        cutoff = self.clock() - retention
        deleted = await self.store.delete_older_than(cutoff, TERMINAL_STATES)
        cleanup_deleted_total.inc(deleted)
        logger.info("cleanup: deleted=%d cutoff=%s", deleted, cutoff.isoformat())
        return {"deleted": deleted}
