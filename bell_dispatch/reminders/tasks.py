import time
from dataclasses import asdict

from celery import shared_task

from bell_dispatch.db.session import get_redis
from .config import settings
from .dispatch_cycle import DispatchCycle
from .dispatcher import PlatformTransport
from .maintenance import InactiveRecipientSweep
from .repository import (
    KeySpace,
    RedisAccessTracker,
    RedisRecipientRegistry,
    RedisReminderStore,
)
from .trigger_index import RedisTriggerIndex


def build_dispatch_cycle() -> DispatchCycle:
    client = get_redis()
    keys = KeySpace()
    return DispatchCycle(
        store=RedisReminderStore(client, keys),
        index=RedisTriggerIndex(client, keys),
        registry=RedisRecipientRegistry(client, keys),
        transport=PlatformTransport.from_settings(),
        keys=keys,
    )


def build_sweep() -> InactiveRecipientSweep:
    client = get_redis()
    keys = KeySpace()
    return InactiveRecipientSweep(
        store=RedisReminderStore(client, keys),
        index=RedisTriggerIndex(client, keys),
        registry=RedisRecipientRegistry(client, keys),
        access=RedisAccessTracker(client, keys),
    )


@shared_task(name="reminders.dispatch_cycle")
def dispatch_cycle_task() -> dict:
    """Run one dispatch cycle bounded by the configured deadline."""
    deadline = time.monotonic() + settings.CYCLE_DEADLINE_SECONDS
    report = build_dispatch_cycle().run(deadline=deadline)
    return report.as_dict()


@shared_task(name="reminders.sweep_inactive")
def sweep_inactive_task() -> dict:
    report = build_sweep().run()
    return asdict(report)
