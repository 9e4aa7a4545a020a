"""Error hierarchy for the notification queue."""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""

    def __init__(self, message: str, record_id: str = ""):
        self.record_id = record_id
        super().__init__(message)


class InvalidMessageError(QueueError, ValueError):
    """Enqueue input rejected before anything was persisted."""


class RecordNotFoundError(QueueError, LookupError):
    def __init__(self, record_id: str):
        super().__init__(f"Notification {record_id!r} not found", record_id)


class InvalidStateError(QueueError):
    """An operator action was attempted on a record in the wrong status."""

    def __init__(self, record_id: str, status: str, expected: str):
        self.status = status
        self.expected = expected
        super().__init__(
            f"Notification {record_id!r} is {status}, not in {expected} state",
            record_id,
        )


class ConfigurationError(QueueError):
    """The queue was wired up with collaborators or limits it cannot work with."""
