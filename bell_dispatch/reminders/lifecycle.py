"""
Reminder lifecycle operations used by the CRUD surface.

Every write keeps the record and its pending entry consistent: a live record
is indexed at its next trigger, and a paused or deleted one is not indexed.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from bell_dispatch.utils.timezone import get_zoneinfo, to_utc_aware, utc_now
from .exceptions import ResolverUnschedulable, RuleInvalid
from .recurrence_models import RecurrenceCalculator
from .repository import AccessTracker, KeySpace, ReminderStore
from .schemas import ReminderRecord
from .trigger_index import PendingTriggerIndex

logger = logging.getLogger(__name__)


class ReminderLifecycleService:
    def __init__(
        self,
        store: ReminderStore,
        index: PendingTriggerIndex,
        keys: Optional[KeySpace] = None,
        access: Optional[AccessTracker] = None,
    ):
        self.store = store
        self.index = index
        self.keys = keys or KeySpace()
        self.access = access

    def _load(self, key: str) -> Optional[ReminderRecord]:
        document = self.store.get(key)
        if document is None:
            return None
        return ReminderRecord.model_validate(document)

    def _schedule(self, record: ReminderRecord, now: datetime) -> datetime:
        rule = record.rule()
        reference = to_utc_aware(record.base_date) or now
        next_at = RecurrenceCalculator.calculate_next_after(
            rule, get_zoneinfo(record.timezone), reference, now
        )
        if next_at is None:
            raise ResolverUnschedulable(f"reminder {record.id} has no future occurrence")
        return next_at

    def save(self, owner_id: str, document: Dict[str, Any], now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Create or replace a reminder and index its next trigger.

        Returns the next trigger, or None for a paused reminder. Raises
        RuleInvalid or ResolverUnschedulable without writing anything.
        """
        now = to_utc_aware(now) if now is not None else utc_now()
        record = ReminderRecord.model_validate({**document, "userId": owner_id})
        key = self.keys.reminder_key(owner_id, record.id)

        if record.is_paused:
            record.rule()
            self.store.set(key, record.to_document())
            self.index.remove(key)
            logger.info("[Lifecycle] Saved paused reminder %s", key)
            return None

        next_at = self._schedule(record, now)
        record = record.model_copy(update={"base_date": next_at})
        self.store.set(key, record.to_document())
        self.index.upsert(key, next_at)
        logger.info("[Lifecycle] Saved reminder %s, next at %s", key, next_at.isoformat())
        return next_at

    def pause(self, key: str, now: Optional[datetime] = None) -> bool:
        record = self._load(key)
        if record is None:
            return False
        now = to_utc_aware(now) if now is not None else utc_now()
        record = record.model_copy(update={"is_paused": True, "paused_at": now})
        self.store.set(key, record.to_document())
        self.index.remove(key)
        logger.info("[Lifecycle] Paused %s", key)
        return True

    def resume(self, key: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """Unpause and schedule from `now`; returns the next trigger or None if missing."""
        record = self._load(key)
        if record is None:
            return None
        now = to_utc_aware(now) if now is not None else utc_now()
        record = record.model_copy(update={"is_paused": False, "paused_at": None, "base_date": None})
        next_at = self._schedule(record, now)
        record = record.model_copy(update={"base_date": next_at})
        self.store.set(key, record.to_document())
        self.index.upsert(key, next_at)
        logger.info("[Lifecycle] Resumed %s, next at %s", key, next_at.isoformat())
        return next_at

    def delete(self, key: str) -> None:
        self.store.delete(key)
        self.index.remove(key)
        logger.info("[Lifecycle] Deleted %s", key)

    def delete_all(self, owner_id: str) -> int:
        keys = self.store.keys_for_owner(owner_id)
        for key in keys:
            self.delete(key)
        return len(keys)

    def sync_recipient(
        self,
        owner_id: str,
        documents: Iterable[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> Dict[str, Optional[datetime]]:
        """
        Replace all reminders of a recipient with `documents`.

        Stored reminders absent from `documents` are deleted. Documents that
        fail validation or cannot be scheduled are skipped and logged.
        """
        now = to_utc_aware(now) if now is not None else utc_now()
        saved: Dict[str, Optional[datetime]] = {}
        for document in documents:
            try:
                next_at = self.save(owner_id, document, now)
            except (RuleInvalid, ResolverUnschedulable, ValueError) as exc:
                logger.warning("[Lifecycle] Skipping reminder %r of %s: %s", document.get("id"), owner_id, exc)
                continue
            saved[self.keys.reminder_key(owner_id, str(document["id"]))] = next_at

        for key in self.store.keys_for_owner(owner_id) - set(saved):
            self.delete(key)

        if self.access is not None:
            self.access.touch(owner_id, now)
        logger.info("[Lifecycle] Synced %d reminder(s) for %s", len(saved), owner_id)
        return saved
