"""
Core data models for the notification dispatcher.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NotificationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({NotificationStatus.SENT, NotificationStatus.FAILED})


class NotificationCategory(str, Enum):
    """Categories used by the producers in the admin backend.

    The queue treats ``category`` as an opaque tag; these values only
    document what the producers send today.
    """
    ACCOUNT_CREATED = "account_created"
    PASSWORD_CHANGED = "password_changed"
    RENEWAL_REMINDER = "renewal_reminder"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    EMERGENCY_ACCESS_ALERT = "emergency_access_alert"
    DOCUMENT_UPLOADED = "document_uploaded"
    PAYMENT_RECEIVED = "payment_received"
    CUSTOM_ADMIN = "custom_admin"
    CUSTOM = "custom"


# ──────────────────────────────────────────────────────────────
#  NotificationRecord: the unit of work
# ──────────────────────────────────────────────────────────────

class NotificationRecord(BaseModel):
    """A single outbound message and its delivery state."""
    id: str = Field(default_factory=new_id)
    recipient: str
    subject: str = ""
    body: str
    category: str = NotificationCategory.CUSTOM.value
    correlation_ref: str = ""                 # e.g. originating user id
    metadata: dict[str, Any] = {}             # resource_type, resource_id, template_id, ...

    status: NotificationStatus = NotificationStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = Field(default_factory=utcnow)
    last_failure_reason: Optional[str] = None
    claimed_by: str = ""                      # worker holding the record while in_flight

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == NotificationStatus.PENDING
            and (self.next_attempt_at is None or self.next_attempt_at <= now)
        )

    def dispatch_order(self) -> tuple[datetime, datetime]:
        """Sort key: oldest-due first, FIFO on ties."""
        return (self.next_attempt_at or self.created_at, self.created_at)


# ──────────────────────────────────────────────────────────────
#  Delivery result: what a transport reports per attempt
# ──────────────────────────────────────────────────────────────

class DeliveryResult(BaseModel):
    ok: bool
    reason: str = ""
    provider_message_id: str = ""

    @classmethod
    def success(cls, provider_message_id: str = "") -> DeliveryResult:
        return cls(ok=True, provider_message_id=provider_message_id)

    @classmethod
    def failure(cls, reason: str) -> DeliveryResult:
        return cls(ok=False, reason=reason or "unknown delivery failure")


# ──────────────────────────────────────────────────────────────
#  Queue statistics
# ──────────────────────────────────────────────────────────────

class QueueStats(BaseModel):
    pending: int = 0
    in_flight: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> QueueStats:
        values = {s.value: int(counts.get(s.value, 0)) for s in NotificationStatus}
        return cls(**values, total=sum(values.values()))
