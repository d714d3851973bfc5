from class_reminders.metrics import reminders_by_state
from class_reminders.repositories.reminder_repo import ReminderRepo


class StatsService:
    def __init__(self, store: ReminderRepo):
        self.store = store

    async def stats(self) -> dict[str, int]:
        counts = await self.store.count_by_state()
        out = {state.lower(): n for state, n in counts.items()}
        for state, n in counts.items():
            reminders_by_state.labels(state=state.lower()).set(n)
        out["total"] = sum(counts.values())
        return out
