"""
Pending trigger index: a global, time-ordered mapping of reminder key to its
next trigger instant.

Reading due entries never mutates the index. Entries are only removed or
replaced by explicit `remove`/`upsert` calls, so an entry that was due when a
cycle crashed stays due for the next one.
"""
import bisect
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import redis

from bell_dispatch.utils.timezone import from_epoch_ms, to_epoch_ms
from .repository import KeySpace, translate_redis_errors
from .schemas import PendingEntry


class PendingTriggerIndex(ABC):

    @abstractmethod
    def upsert(self, key: str, trigger_at: datetime) -> None:
        """Set the single entry for `key`, replacing any previous instant."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Drop the entry for `key`; no-op when absent."""

    @abstractmethod
    def due_entries(self, cutoff: datetime, limit: Optional[int] = None) -> List[PendingEntry]:
        """Entries with trigger instant <= cutoff, ascending by instant then key."""

    @abstractmethod
    def get(self, key: str) -> Optional[datetime]:
        ...

    @abstractmethod
    def size(self) -> int:
        ...

    def due(self, cutoff: datetime, limit: Optional[int] = None) -> List[str]:
        return [entry.key for entry in self.due_entries(cutoff, limit)]


class RedisTriggerIndex(PendingTriggerIndex):
    """Sorted set with epoch-millisecond scores"""

    def __init__(self, client: redis.Redis, keys: Optional[KeySpace] = None):
        self.client = client
        self.keys = keys or KeySpace()

    @translate_redis_errors
    def upsert(self, key: str, trigger_at: datetime) -> None:
        self.client.zadd(self.keys.pending_index, {key: to_epoch_ms(trigger_at)})

    @translate_redis_errors
    def remove(self, key: str) -> None:
        self.client.zrem(self.keys.pending_index, key)

    @translate_redis_errors
    def due_entries(self, cutoff: datetime, limit: Optional[int] = None) -> List[PendingEntry]:
        kwargs = {"withscores": True}
        if limit is not None:
            kwargs.update(start=0, num=limit)
        rows = self.client.zrangebyscore(
            self.keys.pending_index, "-inf", to_epoch_ms(cutoff), **kwargs
        )
        return [PendingEntry(key=member, trigger_at=from_epoch_ms(score)) for member, score in rows]

    @translate_redis_errors
    def get(self, key: str) -> Optional[datetime]:
        score = self.client.zscore(self.keys.pending_index, key)
        return None if score is None else from_epoch_ms(score)

    @translate_redis_errors
    def size(self) -> int:
        return int(self.client.zcard(self.keys.pending_index))


class InMemoryTriggerIndex(PendingTriggerIndex):
    """Sorted list of (epoch ms, key) plus a key -> score map"""

    def __init__(self):
        self._scores: Dict[str, int] = {}
        self._ordered: List[Tuple[int, str]] = []
        self._lock = threading.Lock()

    def _discard(self, key: str) -> None:
        score = self._scores.pop(key, None)
        if score is not None:
            pos = bisect.bisect_left(self._ordered, (score, key))
            del self._ordered[pos]

    def upsert(self, key: str, trigger_at: datetime) -> None:
        score = to_epoch_ms(trigger_at)
        with self._lock:
            self._discard(key)
            self._scores[key] = score
            bisect.insort(self._ordered, (score, key))

    def remove(self, key: str) -> None:
        with self._lock:
            self._discard(key)

    def due_entries(self, cutoff: datetime, limit: Optional[int] = None) -> List[PendingEntry]:
        cutoff_ms = to_epoch_ms(cutoff)
        with self._lock:
            end = bisect.bisect_right(self._ordered, cutoff_ms, key=lambda row: row[0])
            rows = self._ordered[:end]
        if limit is not None:
            rows = rows[:limit]
        return [PendingEntry(key=key, trigger_at=from_epoch_ms(score)) for score, key in rows]

    def get(self, key: str) -> Optional[datetime]:
        with self._lock:
            score = self._scores.get(key)
        return None if score is None else from_epoch_ms(score)

    def size(self) -> int:
        with self._lock:
            return len(self._scores)
