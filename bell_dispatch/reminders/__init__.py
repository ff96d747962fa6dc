"""Reminder dispatch module (recurrence resolver, trigger index, dispatch cycle).

The dispatch cycle runs as a Celery beat task on a fixed cadence. Reminder
records are created and edited by an external CRUD surface, which uses
`lifecycle.ReminderLifecycleService` to keep the trigger index consistent.
"""
