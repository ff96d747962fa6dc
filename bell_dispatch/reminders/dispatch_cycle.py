"""
One dispatch cycle: collect due reminders, deliver them per recipient, and
reschedule each one through the recurrence resolver.

Ordering rules the cycle relies on:
- `due()` never removes entries; only an explicit reschedule or delete does.
- The record is written before the index entry, so a crash in between leaves
  the reminder due (redelivered) instead of lost.
- Every reminder key belongs to exactly one recipient group and each group is
  handled by a single worker, so no key is mutated concurrently.
"""
import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from bell_dispatch.utils.timezone import get_zoneinfo, isoformat_utc, utc_now, to_utc_aware
from . import metrics
from .config import settings
from .dispatcher import DeliveryTransport
from .exceptions import CycleFatalError, PersistenceError, ResolverUnschedulable, RuleInvalid
from .recurrence_models import RecurrenceCalculator, RecurrenceRule
from .repository import KeySpace, RecipientRegistry, ReminderStore
from .schemas import DeliveryEndpoint, DeliveryResult, DeliveryStatus, ReminderRecord
from .trigger_index import PendingTriggerIndex

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    dropped: int = 0
    healed: int = 0
    groups: int = 0
    delivered: int = 0
    expired: int = 0
    failed: int = 0
    rescheduled: int = 0
    deleted: int = 0
    endpoints_removed: int = 0
    skipped_groups: int = 0
    failed_groups: int = 0
    persistence_errors: int = 0
    aborted: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = isoformat_utc(self.started_at)
        data["finished_at"] = isoformat_utc(self.finished_at)
        return data


@dataclass
class DueReminder:
    key: str
    owner_id: str
    record: ReminderRecord
    rule: RecurrenceRule


@dataclass
class GroupOutcome:
    owner_id: str
    skipped: bool = False
    delivered: int = 0
    expired: int = 0
    failed: int = 0
    rescheduled: int = 0
    deleted: int = 0
    persistence_errors: int = 0
    expired_endpoints: Set[str] = field(default_factory=set)

    def count(self, result: DeliveryResult) -> None:
        if result.status == DeliveryStatus.DELIVERED:
            self.delivered += 1
        elif result.status == DeliveryStatus.EXPIRED:
            self.expired += 1
        else:
            self.failed += 1
        metrics.deliveries_total.labels(outcome=result.status.value).inc()


def build_payload(record: ReminderRecord, now: datetime) -> Dict[str, Any]:
    return {
        "title": settings.NOTIFICATION_TITLE,
        "body": record.message or record.title or "",
        "url": record.url,
        "reminderId": record.id,
        "tag": record.id,
        "timestamp": isoformat_utc(now),
    }


class DispatchCycle:
    def __init__(
        self,
        store: ReminderStore,
        index: PendingTriggerIndex,
        registry: RecipientRegistry,
        transport: DeliveryTransport,
        keys: Optional[KeySpace] = None,
        max_workers: Optional[int] = None,
        batch_limit: Optional[int] = None,
        max_backlog_steps: Optional[int] = None,
    ):
        self.store = store
        self.index = index
        self.registry = registry
        self.transport = transport
        self.keys = keys or KeySpace()
        self.max_workers = max_workers or settings.WORKER_CONCURRENCY
        self.batch_limit = batch_limit if batch_limit is not None else settings.DUE_BATCH_LIMIT
        self.max_backlog_steps = max_backlog_steps or settings.MAX_BACKLOG_STEPS

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, now: Optional[datetime] = None, deadline: Optional[float] = None) -> CycleReport:
        """
        Process every reminder due at `now`.

        `deadline` is a time.monotonic() value; recipient groups not started
        before it stay due for the next cycle. Never raises.
        """
        now = to_utc_aware(now) if now is not None else utc_now()
        report = CycleReport(started_at=now)
        metrics.dispatch_cycles_total.inc()
        started = time.monotonic()

        try:
            self._run(now, deadline, report)
        except Exception as exc:
            report.aborted = True
            report.error = repr(exc)
            metrics.dispatch_cycles_aborted_total.inc()
            logger.exception("[Dispatch] Cycle aborted: %r", exc)
        finally:
            report.finished_at = utc_now()
            metrics.dispatch_cycle_duration_seconds.observe(time.monotonic() - started)

        logger.info(
            "[Dispatch] Cycle finished | due=%d groups=%d delivered=%d expired=%d failed=%d "
            "rescheduled=%d deleted=%d skipped_groups=%d aborted=%s",
            report.due, report.groups, report.delivered, report.expired, report.failed,
            report.rescheduled, report.deleted, report.skipped_groups, report.aborted,
        )
        return report

    def _run(self, now: datetime, deadline: Optional[float], report: CycleReport) -> None:
        try:
            metrics.pending_index_size.set(self._retrying(self.index.size))
            due_keys = self._retrying(self.index.due, now, self.batch_limit)
            documents = self._retrying(self.store.get_many, due_keys) if due_keys else {}
        except PersistenceError as exc:
            raise CycleFatalError(f"could not read due reminders: {exc}") from exc

        report.due = len(due_keys)
        metrics.due_reminders_total.inc(len(due_keys))
        logger.info("[Dispatch] Cycle start | now=%s due=%d", isoformat_utc(now), len(due_keys))
        if not due_keys:
            return

        groups: Dict[str, List[DueReminder]] = defaultdict(list)
        for key in due_keys:
            try:
                item = self._load(key, documents.get(key), now, report)
            except PersistenceError as exc:
                report.persistence_errors += 1
                logger.error("[Dispatch] Could not clean up %s, leaving it due: %s", key, exc)
                continue
            if item is not None:
                groups[item.owner_id].append(item)

        report.groups = len(groups)
        outcomes = self._dispatch_groups(groups, now, deadline, report)

        for outcome in outcomes:
            if outcome.skipped:
                report.skipped_groups += 1
                continue
            report.delivered += outcome.delivered
            report.expired += outcome.expired
            report.failed += outcome.failed
            report.rescheduled += outcome.rescheduled
            report.deleted += outcome.deleted
            report.persistence_errors += outcome.persistence_errors
            if outcome.expired_endpoints:
                self._cleanup_registry(outcome, report)

    # ------------------------------------------------------------------
    # Load & filter
    # ------------------------------------------------------------------

    def _load(self, key: str, document: Any, now: datetime, report: CycleReport) -> Optional[DueReminder]:
        if document is None:
            logger.warning("[Dispatch] Dropping %s: record missing", key)
            self._retrying(self.index.remove, key)
            self._dropped(report, "missing")
            return None

        try:
            record = ReminderRecord.model_validate(document)
            rule = record.rule()
        except (ValidationError, RuleInvalid) as exc:
            logger.warning("[Dispatch] Dropping %s: malformed record (%s)", key, exc)
            self._delete(key)
            self._dropped(report, "malformed")
            metrics.reminders_deleted_total.labels(reason="malformed").inc()
            return None

        owner_id = record.user_id or self.keys.owner_of(key)
        if not owner_id:
            logger.warning("[Dispatch] Dropping %s: no recipient", key)
            self._delete(key)
            self._dropped(report, "malformed")
            metrics.reminders_deleted_total.labels(reason="malformed").inc()
            return None

        if record.is_paused:
            # Paused records stay in the store for resume; only the index entry goes
            logger.warning("[Dispatch] Dropping %s: paused record still indexed", key)
            self._retrying(self.index.remove, key)
            self._dropped(report, "paused")
            return None

        base_date = to_utc_aware(record.base_date)
        if base_date is not None and base_date > now:
            # Record already rescheduled but the index write was lost
            logger.info("[Dispatch] Re-indexing %s at %s", key, isoformat_utc(base_date))
            self._retrying(self.index.upsert, key, base_date)
            report.healed += 1
            return None

        return DueReminder(key=key, owner_id=owner_id, record=record, rule=rule)

    def _dropped(self, report: CycleReport, reason: str) -> None:
        report.dropped += 1
        metrics.reminders_dropped_total.labels(reason=reason).inc()

    # ------------------------------------------------------------------
    # Per-recipient dispatch
    # ------------------------------------------------------------------

    def _dispatch_groups(
        self,
        groups: Dict[str, List[DueReminder]],
        now: datetime,
        deadline: Optional[float],
        report: CycleReport,
    ) -> List[GroupOutcome]:
        outcomes = []
        workers = max(1, min(self.max_workers, len(groups)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as executor:
            futures = {
                owner_id: executor.submit(self._process_group, owner_id, items, now, deadline)
                for owner_id, items in groups.items()
            }
            for owner_id, future in futures.items():
                try:
                    outcomes.append(future.result())
                except Exception:
                    # Reminders of a crashed group were not rescheduled and stay due
                    report.failed_groups += 1
                    logger.exception("[Dispatch] Recipient %s failed", owner_id)
        return outcomes

    def _process_group(
        self,
        owner_id: str,
        items: List[DueReminder],
        now: datetime,
        deadline: Optional[float],
    ) -> GroupOutcome:
        outcome = GroupOutcome(owner_id=owner_id)
        if deadline is not None and time.monotonic() >= deadline:
            outcome.skipped = True
            return outcome

        endpoints = self._retrying(self.registry.get, owner_id)
        if not endpoints:
            logger.warning(
                "[Dispatch] Recipient %s has no endpoints; deleting %d reminder(s)", owner_id, len(items)
            )
            for item in items:
                if not self._guarded(outcome, self._delete, item.key):
                    continue
                outcome.deleted += 1
                metrics.reminders_deleted_total.labels(reason="no_endpoints").inc()
            return outcome

        for item in items:
            payload = build_payload(item.record, now)
            for endpoint in endpoints:
                if endpoint.endpoint in outcome.expired_endpoints:
                    continue
                result = self._deliver(endpoint, payload)
                outcome.count(result)
                if result.status == DeliveryStatus.EXPIRED:
                    outcome.expired_endpoints.add(endpoint.endpoint)

        for item in items:
            self._guarded(outcome, self._reschedule, item, now, outcome)
        return outcome

    def _deliver(self, endpoint: DeliveryEndpoint, payload: Dict[str, Any]) -> DeliveryResult:
        try:
            return self.transport.send(endpoint, payload)
        except Exception as exc:
            logger.warning("[Dispatch] Transport raised for %s: %r", endpoint.endpoint, exc)
            return DeliveryResult.failed(repr(exc))

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    def next_trigger(self, rule: RecurrenceRule, tz: tzinfo, reference: datetime, now: datetime) -> datetime:
        """First trigger strictly after `now`; raises ResolverUnschedulable."""
        next_at = RecurrenceCalculator.calculate_next_after(
            rule, tz, reference, now, max_steps=self.max_backlog_steps
        )
        if next_at is None:
            raise ResolverUnschedulable(f"no occurrence of {rule.to_dict()} after {isoformat_utc(reference)}")
        return next_at

    def _reschedule(self, item: DueReminder, now: datetime, outcome: GroupOutcome) -> None:
        tz = get_zoneinfo(item.record.timezone)
        reference = to_utc_aware(item.record.base_date) or now
        try:
            next_at = self.next_trigger(item.rule, tz, reference, now)
        except ResolverUnschedulable as exc:
            logger.warning("[Dispatch] Deleting %s: %s", item.key, exc)
            self._delete(item.key)
            outcome.deleted += 1
            metrics.reminders_deleted_total.labels(reason="unschedulable").inc()
            return

        updated = item.record.model_copy(update={"last_notified": now, "base_date": next_at})
        self._retrying(self.store.set, item.key, updated.to_document())
        self._retrying(self.index.upsert, item.key, next_at)
        outcome.rescheduled += 1
        metrics.reminders_rescheduled_total.inc()

    # ------------------------------------------------------------------
    # Registry cleanup
    # ------------------------------------------------------------------

    def _cleanup_registry(self, outcome: GroupOutcome, report: CycleReport) -> None:
        try:
            remaining = self._retrying(
                self.registry.remove_endpoints, outcome.owner_id, outcome.expired_endpoints
            )
        except PersistenceError as exc:
            report.persistence_errors += 1
            logger.error("[Dispatch] Could not remove expired endpoints of %s: %s", outcome.owner_id, exc)
            return
        removed = len(outcome.expired_endpoints)
        report.endpoints_removed += removed
        metrics.endpoints_removed_total.inc(removed)
        logger.info(
            "[Dispatch] Removed %d expired endpoint(s) of %s; %d left",
            removed, outcome.owner_id, len(remaining),
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _delete(self, key: str) -> None:
        # Record first: a surviving index entry with no record is dropped next cycle
        self._retrying(self.store.delete, key)
        self._retrying(self.index.remove, key)

    def _retrying(self, operation: Callable, *args):
        """Run a persistence operation, retrying once on PersistenceError."""
        try:
            return operation(*args)
        except PersistenceError as exc:
            metrics.persistence_retries_total.inc()
            logger.warning("[Dispatch] Retrying %s after: %s", getattr(operation, "__name__", operation), exc)
            return operation(*args)

    def _guarded(self, outcome: GroupOutcome, operation: Callable, *args) -> bool:
        try:
            operation(*args)
        except PersistenceError as exc:
            outcome.persistence_errors += 1
            logger.error("[Dispatch] Persistence failed for %s, leaving it due: %s", outcome.owner_id, exc)
            return False
        return True
