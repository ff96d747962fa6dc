import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from bell_dispatch.utils.timezone import to_utc_aware, utc_now
from . import metrics
from .config import settings
from .exceptions import PersistenceError
from .repository import AccessTracker, RecipientRegistry, ReminderStore
from .trigger_index import PendingTriggerIndex

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    swept: int = 0
    backfilled: int = 0
    reminders_deleted: int = 0
    errors: int = 0


class InactiveRecipientSweep:
    """Deletes every trace of recipients that have not been seen for a long time"""

    def __init__(
        self,
        store: ReminderStore,
        index: PendingTriggerIndex,
        registry: RecipientRegistry,
        access: AccessTracker,
        inactive_after: Optional[timedelta] = None,
    ):
        self.store = store
        self.index = index
        self.registry = registry
        self.access = access
        self.inactive_after = inactive_after or timedelta(days=settings.INACTIVE_AFTER_DAYS)

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = to_utc_aware(now) if now is not None else utc_now()
        cutoff = now - self.inactive_after
        report = SweepReport()

        for owner_id in sorted(self.store.owners() | self.access.owners()):
            report.checked += 1
            try:
                self._check(owner_id, now, cutoff, report)
            except PersistenceError as exc:
                report.errors += 1
                logger.error("[Sweep] Failed for %s: %s", owner_id, exc)

        logger.info(
            "[Sweep] Done | checked=%d swept=%d backfilled=%d reminders_deleted=%d errors=%d",
            report.checked, report.swept, report.backfilled, report.reminders_deleted, report.errors,
        )
        return report

    def _check(self, owner_id: str, now: datetime, cutoff: datetime, report: SweepReport) -> None:
        last_seen = self.access.last_access(owner_id)
        if last_seen is None:
            # Owners predating access tracking start their clock now
            if self.access.touch(owner_id, now, only_if_missing=True):
                report.backfilled += 1
            return
        if last_seen >= cutoff:
            return

        keys = self.store.keys_for_owner(owner_id)
        for key in keys:
            self.store.delete(key)
            self.index.remove(key)
        self.registry.delete(owner_id)
        self.access.delete(owner_id)

        report.swept += 1
        report.reminders_deleted += len(keys)
        metrics.recipients_swept_total.inc()
        metrics.reminders_deleted_total.labels(reason="inactive").inc(len(keys))
        logger.info(
            "[Sweep] Removed inactive recipient %s (last seen %s, %d reminder(s))",
            owner_id, last_seen.isoformat(), len(keys),
        )
