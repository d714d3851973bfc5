from prometheus_client import Counter, Gauge


reminders_created_total = Counter(
    "class_reminders_created_total",
    "Total reminder records created by the generator",
)

reminders_skipped_total = Counter(
    "class_reminders_skipped_total",
    "Total candidates skipped because the record already existed",
)

roster_failures_total = Counter(
    "class_reminders_roster_failures_total",
    "Class occurrences skipped because their roster could not be read",
)

dispatch_outcomes_total = Counter(
    "class_reminders_dispatch_outcomes_total",
    "Dispatcher outcomes per record",
    ["outcome"],
)

subscriptions_pruned_total = Counter(
    "class_reminders_subscriptions_pruned_total",
    "Push subscriptions deleted after a permanent delivery failure",
)

cleanup_deleted_total = Counter(
    "class_reminders_cleanup_deleted_total",
    "Terminal reminder records deleted by cleanup",
)

scheduler_ticks_skipped_total = Counter(
    "class_reminders_scheduler_ticks_skipped_total",
    "Scheduler ticks skipped because the previous run was still busy",
    ["trigger"],
)

reminders_by_state = Gauge(
    "class_reminders_by_state",
    "Reminder records per state (refreshed by stats)",
    ["state"],
)
