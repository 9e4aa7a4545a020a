"""
Notification queue — durable, retrying, at-least-once delivery.

- NotificationQueue: enqueue, stats, listing, operator retry
- Dispatcher: background poll loop that claims and delivers due records
- RetryPolicy / backoff_delay: exponential backoff schedule
- resolve_attempt: the status state machine
"""
from job_queue.errors import (
    QueueError, InvalidMessageError, RecordNotFoundError, InvalidStateError, ConfigurationError,
)
from job_queue.retry import RetryPolicy, backoff_delay, next_attempt_at, is_exhausted
from job_queue.state import (
    StatusUpdate, resolve_attempt, release_claim, reset_for_retry, can_transition,
)
from job_queue.dispatcher import Dispatcher, DispatcherMetrics
from job_queue.service import NotificationQueue

__all__ = [
    "QueueError", "InvalidMessageError", "RecordNotFoundError", "InvalidStateError",
    "ConfigurationError",
    "RetryPolicy", "backoff_delay", "next_attempt_at", "is_exhausted",
    "StatusUpdate", "resolve_attempt", "release_claim", "reset_for_retry", "can_transition",
    "Dispatcher", "DispatcherMetrics",
    "NotificationQueue",
]
