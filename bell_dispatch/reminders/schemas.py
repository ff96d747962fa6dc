"""
Schemas for stored reminder documents, delivery endpoints and delivery outcomes
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .recurrence_models import RecurrenceRule


class ReminderRecord(BaseModel):
    """
    A reminder document as written by the CRUD surface.

    Unknown fields (tags, createdAt, status, ...) are preserved so a rewrite
    by the dispatch core never loses data it does not own.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    title: Optional[str] = None
    message: Optional[str] = None
    url: Optional[str] = None
    schedule: Dict[str, Any]
    timezone: Optional[str] = None
    is_paused: bool = Field(default=False, alias="isPaused")
    paused_at: Optional[datetime] = Field(default=None, alias="pausedAt")
    last_notified: Optional[datetime] = Field(default=None, alias="lastNotified")
    base_date: Optional[datetime] = Field(default=None, alias="baseDate")

    def rule(self) -> RecurrenceRule:
        """Parsed recurrence rule; raises RuleInvalid."""
        return RecurrenceRule.from_dict(self.schedule)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DeliveryEndpoint(BaseModel):
    """A push destination registered by a recipient.

    Web endpoints are Web Push subscriptions (push service URL plus p256dh/auth
    keys); android and ios endpoints carry an FCM registration token.
    """
    model_config = ConfigDict(extra="allow")

    endpoint: str
    keys: Dict[str, str] = Field(default_factory=dict)
    platform: str = "web"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    reason: Optional[str] = None

    @classmethod
    def delivered(cls) -> "DeliveryResult":
        return cls(DeliveryStatus.DELIVERED)

    @classmethod
    def expired(cls, reason: Optional[str] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.EXPIRED, reason)

    @classmethod
    def failed(cls, reason: Optional[str] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.FAILED, reason)


@dataclass(frozen=True)
class PendingEntry:
    """One entry of the pending trigger index"""
    key: str
    trigger_at: datetime
