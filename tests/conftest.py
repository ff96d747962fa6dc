"""Pytest configuration and fixtures."""

from datetime import datetime, timezone

import pytest

from bell_dispatch.reminders.dispatch_cycle import DispatchCycle
from bell_dispatch.reminders.dispatcher import DeliveryTransport
from bell_dispatch.reminders.repository import (
    InMemoryAccessTracker,
    InMemoryRecipientRegistry,
    InMemoryReminderStore,
    KeySpace,
)
from bell_dispatch.reminders.schemas import DeliveryEndpoint, DeliveryResult
from bell_dispatch.reminders.trigger_index import InMemoryTriggerIndex


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def parse_iso(value):
    """Parse stored ISO timestamps, which use a trailing Z for UTC."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


class FakeTransport(DeliveryTransport):
    """Records every send; outcomes are looked up by endpoint address."""

    def __init__(self):
        self.outcomes = {}
        self.calls = []

    def send(self, endpoint, payload):
        self.calls.append((endpoint.endpoint, payload))
        outcome = self.outcomes.get(endpoint.endpoint, DeliveryResult.delivered())
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def keys():
    return KeySpace("")


@pytest.fixture
def store(keys):
    return InMemoryReminderStore(keys)


@pytest.fixture
def index():
    return InMemoryTriggerIndex()


@pytest.fixture
def registry():
    return InMemoryRecipientRegistry()


@pytest.fixture
def access():
    return InMemoryAccessTracker()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def cycle(store, index, registry, transport, keys):
    return DispatchCycle(store, index, registry, transport, keys=keys, max_workers=2)


@pytest.fixture
def add_reminder(store, index, keys):
    """Store a daily-at-10:00-UTC reminder and index it at `trigger_at`."""

    def _add(owner_id, reminder_id, trigger_at, schedule=None, **fields):
        key = keys.reminder_key(owner_id, reminder_id)
        document = {
            "id": reminder_id,
            "userId": owner_id,
            "title": f"Reminder {reminder_id}",
            "message": "Time to check",
            "url": "https://example.com/items/1",
            "schedule": schedule or {"type": "daily", "interval": 1, "hour": 10, "minute": 0},
            "timezone": "UTC",
            "isPaused": False,
            "baseDate": trigger_at.isoformat().replace("+00:00", "Z"),
        }
        document.update(fields)
        store.set(key, document)
        index.upsert(key, trigger_at)
        return key

    return _add


@pytest.fixture
def add_endpoints(registry):
    def _add(owner_id, *addresses):
        for address in addresses:
            registry.add_endpoint(owner_id, DeliveryEndpoint(endpoint=address))

    return _add
