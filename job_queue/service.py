"""
Notification Queue — the producer and operator surface over a record store.

Producers call ``enqueue``; the admin API calls the rest. Nothing here
delivers anything: records are picked up by a Dispatcher polling the same
store.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from database.store_base import BaseRecordStore, StoreUnavailableError
from job_queue.errors import InvalidMessageError, InvalidStateError, RecordNotFoundError
from job_queue.retry import RetryPolicy
from job_queue.state import reset_for_retry
from models.schemas import (
    NotificationCategory, NotificationRecord, NotificationStatus, QueueStats, utcnow,
)

logger = structlog.get_logger()

MAX_LIST_LIMIT = 500


class NotificationQueue:
    """
    Usage:
        queue = NotificationQueue(store)
        record = await queue.enqueue("user@example.com", "Welcome", "<p>Hi</p>",
                                     category="account_created")
        stats = await queue.get_stats()
    """

    def __init__(self, store: BaseRecordStore, policy: RetryPolicy = None, clock=None):
        self.store = store
        self.policy = policy or RetryPolicy()
        self._clock = clock or utcnow

    # ── Producers ─────────────────────────────────────────────

    async def enqueue(
        self,
        recipient: str,
        subject: str,
        body: str,
        category: str = NotificationCategory.CUSTOM.value,
        correlation_ref: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> NotificationRecord:
        """
        Persist a new pending record, due immediately.

        Raises InvalidMessageError before touching the store when the
        recipient or body is blank or the category is empty.
        """
        recipient = (recipient or "").strip()
        category = (category or "").strip()
        if not recipient:
            raise InvalidMessageError("recipient must not be empty")
        if not body or not body.strip():
            raise InvalidMessageError("body must not be empty")
        if not category:
            raise InvalidMessageError("category must not be empty")

        now = self._clock()
        record = NotificationRecord(
            recipient=recipient,
            subject=subject or "",
            body=body,
            category=category,
            correlation_ref=correlation_ref or "",
            metadata=dict(metadata or {}),
            status=NotificationStatus.PENDING,
            max_attempts=self.policy.max_attempts,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        await self._persist(record)
        logger.info("notification_enqueued",
                    record_id=record.id,
                    recipient=recipient,
                    category=category)
        return record

    @retry(
        retry=retry_if_exception_type(StoreUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=1),
        reraise=True,
    )
    async def _persist(self, record: NotificationRecord) -> str:
        return await self.store.create(record)

    # ── Observability ─────────────────────────────────────────

    async def get(self, record_id: str) -> NotificationRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def get_stats(self) -> QueueStats:
        return QueueStats.from_counts(await self.store.count_by_status())

    async def list_records(
        self,
        status: Union[NotificationStatus, str, None] = None,
        category: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        """Records ordered by created_at; ``limit`` is clamped to 1..500."""
        if status is not None:
            status = NotificationStatus(status)
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        offset = max(0, int(offset))
        return await self.store.list_by_status(
            status=status, limit=limit, offset=offset, category=category or None,
        )

    async def list_pending(self, limit: int = 50, offset: int = 0) -> list[NotificationRecord]:
        return await self.list_records(NotificationStatus.PENDING, limit=limit, offset=offset)

    # ── Operators ─────────────────────────────────────────────

    async def retry_failed(self, record_id: str) -> NotificationRecord:
        """
        Send a terminally failed record back to pending with a fresh attempt budget.

        Raises RecordNotFoundError for unknown ids and InvalidStateError for
        any record that is not failed; neither changes anything.
        """
        record = await self.get(record_id)
        now = self._clock()
        update = reset_for_retry(record, now)

        applied = await self.store.update_status(
            record.id,
            update.status,
            update.attempt_count,
            update.next_attempt_at,
            update.failure_reason,
            expected_status=NotificationStatus.FAILED,
            now=now,
        )
        if not applied:
            # Lost a race with another operator retry
            current = await self.get(record_id)
            raise InvalidStateError(record_id, current.status.value, NotificationStatus.FAILED.value)

        logger.info("notification_retry_requested",
                    record_id=record.id,
                    previous_attempts=record.attempt_count)
        return await self.get(record_id)
