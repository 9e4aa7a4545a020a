"""
Status state machine for notification records.

    pending ──claim──▶ in_flight ──ok──▶ sent            (terminal)
       ▲                   │
       └──── backoff ◀─────┤ failed, attempts < max
                           └──▶ failed                   (terminal, attempts == max)
    failed ──operator retry──▶ pending

Transitions are computed here as pure functions; stores only persist them.
Every StatusUpdate built here is checked against ALLOWED_TRANSITIONS, so a
write the table does not permit never reaches a store.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from job_queue.errors import InvalidStateError
from job_queue.retry import RetryPolicy, is_exhausted, next_attempt_at
from models.schemas import DeliveryResult, NotificationRecord, NotificationStatus

S = NotificationStatus

ALLOWED_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    S.PENDING: frozenset({S.IN_FLIGHT}),
    S.IN_FLIGHT: frozenset({S.SENT, S.PENDING, S.FAILED}),
    S.SENT: frozenset(),
    S.FAILED: frozenset({S.PENDING}),   # manual retry only
}


def can_transition(current: NotificationStatus, target: NotificationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class StatusUpdate:
    """The write a store must apply for one transition."""
    status: NotificationStatus
    attempt_count: int
    next_attempt_at: Optional[datetime]
    failure_reason: Optional[str]
    outcome: str        # "sent" | "retried" | "failed" | "reset" | "released"


def _checked(record: NotificationRecord, update: StatusUpdate) -> StatusUpdate:
    if not can_transition(record.status, update.status):
        raise InvalidStateError(record.id, record.status.value, update.status.value)
    return update


def resolve_attempt(
    record: NotificationRecord,
    result: DeliveryResult,
    now: datetime,
    policy: RetryPolicy,
) -> StatusUpdate:
    """Apply one delivery result to an in_flight record."""
    if record.status != S.IN_FLIGHT:
        raise InvalidStateError(record.id, record.status.value, S.IN_FLIGHT.value)

    attempts = record.attempt_count + 1
    if result.ok:
        update = StatusUpdate(S.SENT, attempts, None, None, "sent")
    elif is_exhausted(attempts, record.max_attempts):
        update = StatusUpdate(S.FAILED, attempts, None, result.reason, "failed")
    else:
        update = StatusUpdate(
            S.PENDING, attempts, next_attempt_at(now, attempts, policy), result.reason, "retried",
        )
    return _checked(record, update)


def release_claim(record: NotificationRecord, now: datetime) -> StatusUpdate:
    """
    Hand a claimed record back without attempting it (dispatcher shutdown).

    No attempt was made, so the attempt count and last failure reason are
    kept and the record is due again immediately.
    """
    if record.status != S.IN_FLIGHT:
        raise InvalidStateError(record.id, record.status.value, S.IN_FLIGHT.value)
    return _checked(record, StatusUpdate(
        S.PENDING, record.attempt_count, now, record.last_failure_reason, "released",
    ))


def reset_for_retry(record: NotificationRecord, now: datetime) -> StatusUpdate:
    """Operator retry: a failed record starts over with a fresh attempt budget."""
    if record.status != S.FAILED:
        raise InvalidStateError(record.id, record.status.value, S.FAILED.value)
    return _checked(record, StatusUpdate(S.PENDING, 0, now, None, "reset"))
