"""
Key/value persistence for reminder records, recipient endpoints and access times.

Each contract has a Redis implementation used in production and an in-memory
one used by tests and local runs.
"""
import functools
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import redis
from pydantic import ValidationError

from bell_dispatch.core.config import settings
from bell_dispatch.utils.timezone import from_epoch_ms, to_epoch_ms
from .exceptions import PersistenceError
from .schemas import DeliveryEndpoint

logger = logging.getLogger(__name__)


class KeySpace:
    """Builds and parses every key the dispatch core reads or writes"""

    PENDING_INDEX = "reminders_by_time"

    def __init__(self, prefix: Optional[str] = None):
        self.prefix = settings.KEY_PREFIX if prefix is None else prefix

    def reminder_key(self, owner_id: str, reminder_id: str) -> str:
        return f"{self.prefix}reminder:{owner_id}:{reminder_id}"

    def owner_of(self, reminder_key: str) -> Optional[str]:
        """Owner id embedded in a reminder key, or None if the key is foreign."""
        head = f"{self.prefix}reminder:"
        if not reminder_key.startswith(head):
            return None
        owner, sep, reminder_id = reminder_key[len(head):].partition(":")
        if not sep or not owner or not reminder_id:
            return None
        return owner

    def reminder_pattern(self) -> str:
        return f"{self.prefix}reminder:*"

    def subscriptions_key(self, owner_id: str) -> str:
        return f"{self.prefix}user:{owner_id}:subscriptions"

    def owner_reminders_key(self, owner_id: str) -> str:
        return f"{self.prefix}user:{owner_id}:reminder_keys"

    def last_access_key(self, owner_id: str) -> str:
        return f"{self.prefix}user_last_access:{owner_id}"

    def last_access_pattern(self) -> str:
        return f"{self.prefix}user_last_access:*"

    def owner_of_access_key(self, key: str) -> str:
        return key[len(f"{self.prefix}user_last_access:"):]

    @property
    def pending_index(self) -> str:
        return f"{self.prefix}{self.PENDING_INDEX}"


def translate_redis_errors(func):
    """Re-raise redis client failures as PersistenceError."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.RedisError as exc:
            raise PersistenceError(f"{func.__qualname__} failed: {exc}") from exc
    return wrapper


def _decode(raw: Optional[str]) -> Any:
    # Undecodable values come back raw so callers can classify them as malformed
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# ---------------------------------------------------------------------------
# Reminder record store
# ---------------------------------------------------------------------------

class ReminderStore(ABC):
    """Reminder documents keyed by reminder key"""

    @abstractmethod
    def get(self, key: str) -> Any:
        ...

    @abstractmethod
    def get_many(self, keys: List[str]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def set(self, key: str, document: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys_for_owner(self, owner_id: str) -> Set[str]:
        ...

    @abstractmethod
    def owners(self) -> Set[str]:
        ...


class RedisReminderStore(ReminderStore):
    def __init__(self, client: redis.Redis, keys: Optional[KeySpace] = None):
        self.client = client
        self.keys = keys or KeySpace()

    @translate_redis_errors
    def get(self, key: str) -> Any:
        return _decode(self.client.get(key))

    @translate_redis_errors
    def get_many(self, keys: List[str]) -> Dict[str, Any]:
        if not keys:
            return {}
        values = self.client.mget(keys)
        return {key: _decode(raw) for key, raw in zip(keys, values)}

    @translate_redis_errors
    def set(self, key: str, document: Dict[str, Any]) -> None:
        owner = self.keys.owner_of(key)
        pipe = self.client.pipeline()
        pipe.set(key, json.dumps(document))
        if owner:
            pipe.sadd(self.keys.owner_reminders_key(owner), key)
        pipe.execute()

    @translate_redis_errors
    def delete(self, key: str) -> None:
        owner = self.keys.owner_of(key)
        pipe = self.client.pipeline()
        pipe.delete(key)
        if owner:
            pipe.srem(self.keys.owner_reminders_key(owner), key)
        pipe.execute()

    @translate_redis_errors
    def keys_for_owner(self, owner_id: str) -> Set[str]:
        return set(self.client.smembers(self.keys.owner_reminders_key(owner_id)))

    @translate_redis_errors
    def owners(self) -> Set[str]:
        found = set()
        for key in self.client.scan_iter(match=self.keys.reminder_pattern(), count=500):
            owner = self.keys.owner_of(key)
            if owner:
                found.add(owner)
        return found


class InMemoryReminderStore(ReminderStore):
    def __init__(self, keys: Optional[KeySpace] = None):
        self.keys = keys or KeySpace("")
        self._documents: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            return self._documents.get(key)

    def get_many(self, keys: List[str]) -> Dict[str, Any]:
        with self._lock:
            return {key: self._documents.get(key) for key in keys}

    def set(self, key: str, document: Dict[str, Any]) -> None:
        # Copy through JSON so callers never share mutable state with the store
        with self._lock:
            self._documents[key] = json.loads(json.dumps(document))

    def delete(self, key: str) -> None:
        with self._lock:
            self._documents.pop(key, None)

    def keys_for_owner(self, owner_id: str) -> Set[str]:
        with self._lock:
            return {k for k in self._documents if self.keys.owner_of(k) == owner_id}

    def owners(self) -> Set[str]:
        with self._lock:
            return {o for o in map(self.keys.owner_of, self._documents) if o}


# ---------------------------------------------------------------------------
# Recipient registry
# ---------------------------------------------------------------------------

def _parse_endpoints(owner_id: str, raw: Any) -> List[DeliveryEndpoint]:
    if not raw:
        return []
    if not isinstance(raw, list):
        logger.warning("[Registry] Ignoring non-list endpoints for %s", owner_id)
        return []
    endpoints = []
    for item in raw:
        try:
            endpoints.append(DeliveryEndpoint.model_validate(item))
        except ValidationError:
            logger.warning("[Registry] Skipping malformed endpoint for %s", owner_id)
    return endpoints


def _merge_endpoint(
    endpoints: List[DeliveryEndpoint], endpoint: DeliveryEndpoint
) -> List[DeliveryEndpoint]:
    kept = [e for e in endpoints if e.endpoint != endpoint.endpoint]
    kept.append(endpoint)
    return kept


class RecipientRegistry(ABC):
    """Delivery endpoints registered per recipient"""

    @abstractmethod
    def get(self, owner_id: str) -> List[DeliveryEndpoint]:
        ...

    @abstractmethod
    def set(self, owner_id: str, endpoints: List[DeliveryEndpoint]) -> None:
        ...

    @abstractmethod
    def delete(self, owner_id: str) -> None:
        ...

    def add_endpoint(self, owner_id: str, endpoint: DeliveryEndpoint) -> List[DeliveryEndpoint]:
        """Register an endpoint, replacing any entry with the same address."""
        endpoints = _merge_endpoint(self.get(owner_id), endpoint)
        self.set(owner_id, endpoints)
        return endpoints

    def remove_endpoints(self, owner_id: str, addresses: Iterable[str]) -> List[DeliveryEndpoint]:
        """Remove endpoints by address; the registration is dropped once empty."""
        doomed = set(addresses)
        endpoints = self.get(owner_id)
        remaining = [e for e in endpoints if e.endpoint not in doomed]
        if not remaining:
            self.delete(owner_id)
        elif len(remaining) != len(endpoints):
            self.set(owner_id, remaining)
        return remaining


class RedisRecipientRegistry(RecipientRegistry):
    def __init__(self, client: redis.Redis, keys: Optional[KeySpace] = None):
        self.client = client
        self.keys = keys or KeySpace()

    @translate_redis_errors
    def get(self, owner_id: str) -> List[DeliveryEndpoint]:
        raw = _decode(self.client.get(self.keys.subscriptions_key(owner_id)))
        return _parse_endpoints(owner_id, raw)

    @translate_redis_errors
    def set(self, owner_id: str, endpoints: List[DeliveryEndpoint]) -> None:
        payload = [e.model_dump(mode="json") for e in endpoints]
        self.client.set(self.keys.subscriptions_key(owner_id), json.dumps(payload))

    @translate_redis_errors
    def delete(self, owner_id: str) -> None:
        self.client.delete(self.keys.subscriptions_key(owner_id))


class InMemoryRecipientRegistry(RecipientRegistry):
    def __init__(self):
        self._endpoints: Dict[str, List[DeliveryEndpoint]] = {}
        self._lock = threading.Lock()

    def get(self, owner_id: str) -> List[DeliveryEndpoint]:
        with self._lock:
            return list(self._endpoints.get(owner_id, []))

    def set(self, owner_id: str, endpoints: List[DeliveryEndpoint]) -> None:
        with self._lock:
            self._endpoints[owner_id] = list(endpoints)

    def delete(self, owner_id: str) -> None:
        with self._lock:
            self._endpoints.pop(owner_id, None)

    def owners(self) -> Set[str]:
        with self._lock:
            return set(self._endpoints)


# ---------------------------------------------------------------------------
# Access tracking
# ---------------------------------------------------------------------------

class AccessTracker(ABC):
    """Last time each recipient was seen, used by the inactive sweep"""

    @abstractmethod
    def touch(self, owner_id: str, at: datetime, only_if_missing: bool = False) -> bool:
        """Record an access; returns True when a value was written."""

    @abstractmethod
    def last_access(self, owner_id: str) -> Optional[datetime]:
        ...

    @abstractmethod
    def delete(self, owner_id: str) -> None:
        ...

    @abstractmethod
    def owners(self) -> Set[str]:
        ...


class RedisAccessTracker(AccessTracker):
    def __init__(self, client: redis.Redis, keys: Optional[KeySpace] = None):
        self.client = client
        self.keys = keys or KeySpace()

    @translate_redis_errors
    def touch(self, owner_id: str, at: datetime, only_if_missing: bool = False) -> bool:
        written = self.client.set(
            self.keys.last_access_key(owner_id), to_epoch_ms(at), nx=only_if_missing
        )
        return bool(written)

    @translate_redis_errors
    def last_access(self, owner_id: str) -> Optional[datetime]:
        raw = self.client.get(self.keys.last_access_key(owner_id))
        if raw is None:
            return None
        try:
            return from_epoch_ms(float(raw))
        except ValueError:
            logger.warning("[Sweep] Unreadable access time %r for %s", raw, owner_id)
            return None

    @translate_redis_errors
    def delete(self, owner_id: str) -> None:
        self.client.delete(self.keys.last_access_key(owner_id))

    @translate_redis_errors
    def owners(self) -> Set[str]:
        return {
            self.keys.owner_of_access_key(key)
            for key in self.client.scan_iter(match=self.keys.last_access_pattern(), count=500)
        }


class InMemoryAccessTracker(AccessTracker):
    def __init__(self):
        self._seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def touch(self, owner_id: str, at: datetime, only_if_missing: bool = False) -> bool:
        with self._lock:
            if only_if_missing and owner_id in self._seen:
                return False
            self._seen[owner_id] = at
            return True

    def last_access(self, owner_id: str) -> Optional[datetime]:
        with self._lock:
            return self._seen.get(owner_id)

    def delete(self, owner_id: str) -> None:
        with self._lock:
            self._seen.pop(owner_id, None)

    def owners(self) -> Set[str]:
        with self._lock:
            return set(self._seen)
