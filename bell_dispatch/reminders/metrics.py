from prometheus_client import Counter, Gauge, Histogram


dispatch_cycles_total = Counter(
    "reminder_dispatch_cycles_total",
    "Total dispatch cycles started",
)

dispatch_cycles_aborted_total = Counter(
    "reminder_dispatch_cycles_aborted_total",
    "Dispatch cycles aborted by an unexpected error",
)

dispatch_cycle_duration_seconds = Histogram(
    "reminder_dispatch_cycle_duration_seconds",
    "Wall time of one dispatch cycle",
)

pending_index_size = Gauge(
    "reminder_pending_index_size",
    "Entries in the pending trigger index at cycle start",
)

due_reminders_total = Counter(
    "reminder_due_total",
    "Due reminder keys collected from the trigger index",
)

reminders_dropped_total = Counter(
    "reminder_dropped_total",
    "Due reminders dropped before delivery",
    ["reason"],
)

deliveries_total = Counter(
    "reminder_deliveries_total",
    "Delivery attempts per endpoint by outcome",
    ["outcome"],
)

reminders_rescheduled_total = Counter(
    "reminder_rescheduled_total",
    "Reminders rescheduled after a delivery attempt",
)

reminders_deleted_total = Counter(
    "reminder_deleted_total",
    "Reminders deleted by the dispatch core",
    ["reason"],
)

persistence_retries_total = Counter(
    "reminder_persistence_retries_total",
    "Store or index operations retried after a failure",
)

endpoints_removed_total = Counter(
    "reminder_endpoints_removed_total",
    "Expired delivery endpoints removed from the registry",
)

recipients_swept_total = Counter(
    "reminder_recipients_swept_total",
    "Inactive recipients whose data was deleted",
)
