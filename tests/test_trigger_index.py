"""Tests for the pending trigger index implementations."""

from unittest.mock import MagicMock

import pytest
import redis

from bell_dispatch.reminders.exceptions import PersistenceError
from bell_dispatch.reminders.repository import KeySpace
from bell_dispatch.reminders.trigger_index import InMemoryTriggerIndex, RedisTriggerIndex
from bell_dispatch.utils.timezone import to_epoch_ms
from tests.conftest import utc

T0 = utc(2026, 10, 19, 10, 0)
T1 = utc(2026, 10, 19, 11, 0)
T2 = utc(2026, 10, 19, 12, 0)


class TestInMemoryTriggerIndex:
    def test_due_is_inclusive_and_ascending(self):
        index = InMemoryTriggerIndex()
        index.upsert("c", T2)
        index.upsert("a", T1)
        index.upsert("b", T0)

        assert index.due(T1) == ["b", "a"]
        assert index.due(T2) == ["b", "a", "c"]
        assert index.due(utc(2026, 10, 19, 9, 59)) == []

    def test_ties_ordered_by_key(self):
        index = InMemoryTriggerIndex()
        for key in ("z", "m", "a"):
            index.upsert(key, T0)
        assert index.due(T0) == ["a", "m", "z"]

    def test_upsert_replaces_existing_entry(self):
        index = InMemoryTriggerIndex()
        index.upsert("a", T0)
        index.upsert("a", T2)

        assert index.size() == 1
        assert index.due(T1) == []
        assert index.get("a") == T2

    def test_due_does_not_mutate(self):
        index = InMemoryTriggerIndex()
        index.upsert("a", T0)
        index.due(T2)
        index.due(T2)
        assert index.due(T2) == ["a"]
        assert index.size() == 1

    def test_remove_is_idempotent(self):
        index = InMemoryTriggerIndex()
        index.upsert("a", T0)
        index.remove("a")
        index.remove("a")
        index.remove("never-added")
        assert index.due(T2) == []
        assert index.get("a") is None

    def test_limit(self):
        index = InMemoryTriggerIndex()
        index.upsert("a", T0)
        index.upsert("b", T1)
        index.upsert("c", T2)
        assert index.due(T2, limit=2) == ["a", "b"]

    def test_due_entries_carry_instants(self):
        index = InMemoryTriggerIndex()
        index.upsert("a", T0)
        [entry] = index.due_entries(T0)
        assert entry.key == "a"
        assert entry.trigger_at == T0


class TestRedisTriggerIndex:
    def _index(self, client):
        return RedisTriggerIndex(client, KeySpace("dev:"))

    def test_upsert_writes_epoch_millisecond_score(self):
        client = MagicMock()
        self._index(client).upsert("dev:reminder:u1:r1", T0)
        client.zadd.assert_called_once_with("dev:reminders_by_time", {"dev:reminder:u1:r1": to_epoch_ms(T0)})

    def test_remove(self):
        client = MagicMock()
        self._index(client).remove("dev:reminder:u1:r1")
        client.zrem.assert_called_once_with("dev:reminders_by_time", "dev:reminder:u1:r1")

    def test_due_entries_query_and_decoding(self):
        client = MagicMock()
        client.zrangebyscore.return_value = [("k1", float(to_epoch_ms(T0))), ("k2", float(to_epoch_ms(T1)))]

        entries = self._index(client).due_entries(T1, limit=10)

        client.zrangebyscore.assert_called_once_with(
            "dev:reminders_by_time", "-inf", to_epoch_ms(T1), withscores=True, start=0, num=10
        )
        assert [e.key for e in entries] == ["k1", "k2"]
        assert entries[1].trigger_at == T1

    def test_due_without_limit(self):
        client = MagicMock()
        client.zrangebyscore.return_value = []
        assert self._index(client).due(T1) == []
        client.zrangebyscore.assert_called_once_with(
            "dev:reminders_by_time", "-inf", to_epoch_ms(T1), withscores=True
        )

    def test_get_and_size(self):
        client = MagicMock()
        client.zscore.return_value = None
        client.zcard.return_value = 3
        index = self._index(client)
        assert index.get("missing") is None
        assert index.size() == 3

        client.zscore.return_value = float(to_epoch_ms(T2))
        assert index.get("k") == T2

    def test_redis_errors_become_persistence_errors(self):
        client = MagicMock()
        client.zadd.side_effect = redis.ConnectionError("down")
        with pytest.raises(PersistenceError):
            self._index(client).upsert("k", T0)
