"""
InMemoryRecordStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlRecordStore
  - Claims are atomic within the process (one asyncio.Lock guards every
    read-modify-write), so any number of dispatcher tasks can share it
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Optional

from database.store_base import BaseRecordStore
from models.schemas import NotificationRecord, NotificationStatus, utcnow

logger = structlog.get_logger()

class InMemoryRecordStore(BaseRecordStore):
    """
    Full-featured in-memory store with the same interface as SqlRecordStore.
    Hands out copies, never the stored objects.
    """

    atomic_claim = True

    def __init__(self):
        self._records: dict[str, NotificationRecord] = {}   # id → record
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Records ───────────────────────────────────────────

    async def create(self, record: NotificationRecord) -> str:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"Duplicate record id {record.id!r}")
            self._records[record.id] = record.model_copy(deep=True)
            try:
                self._changed()
            except Exception:
                del self._records[record.id]
                raise
        return record.id

    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    # ── Dispatch ──────────────────────────────────────────

    async def claim_batch(
        self, limit: int, now: datetime, worker: str = "",
    ) -> list[NotificationRecord]:
        if limit <= 0:
            return []
        async with self._lock:
            due = [r for r in self._records.values() if r.is_due(now)]
            due.sort(key=NotificationRecord.dispatch_order)
            due = due[:limit]
            if not due:
                return []
            snapshot = self._snapshot(due)
            claimed = []
            for record in due:
                record.status = NotificationStatus.IN_FLIGHT
                record.claimed_by = worker
                record.updated_at = now
                claimed.append(record.model_copy(deep=True))
            self._commit(snapshot)
            return claimed

    async def update_status(
        self,
        record_id: str,
        status: NotificationStatus,
        attempt_count: int,
        next_attempt_at: Optional[datetime],
        failure_reason: Optional[str],
        *,
        expected_status: Optional[NotificationStatus] = None,
        claimed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            if expected_status is not None and record.status != expected_status:
                return False
            if claimed_by is not None and record.claimed_by != claimed_by:
                return False
            snapshot = self._snapshot([record])
            record.status = status
            record.attempt_count = attempt_count
            record.next_attempt_at = next_attempt_at
            record.last_failure_reason = failure_reason
            record.claimed_by = ""
            record.updated_at = now
            if status == NotificationStatus.SENT:
                record.sent_at = now
            self._commit(snapshot)
            return True

    async def refresh_claim(self, record_id: str, worker: str, now: datetime) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if (
                record is None
                or record.status != NotificationStatus.IN_FLIGHT
                or record.claimed_by != worker
            ):
                return False
            snapshot = self._snapshot([record])
            record.updated_at = now
            self._commit(snapshot)
            return True

    async def recover_stale(self, older_than: datetime, now: datetime) -> int:
        async with self._lock:
            stale = [
                r for r in self._records.values()
                if r.status == NotificationStatus.IN_FLIGHT and r.updated_at < older_than
            ]
            if not stale:
                return 0
            snapshot = self._snapshot(stale)
            for record in stale:
                record.status = NotificationStatus.PENDING
                record.claimed_by = ""
                record.next_attempt_at = now
                record.updated_at = now
            self._commit(snapshot)
            return len(stale)

    # ── Observability ─────────────────────────────────────

    async def list_by_status(
        self,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
        offset: int = 0,
        category: Optional[str] = None,
    ) -> list[NotificationRecord]:
        records = [
            r for r in self._records.values()
            if (status is None or r.status == status)
            and (category is None or r.category == category)
        ]
        records.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in records[offset:offset + limit]]

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in NotificationStatus}
        for record in self._records.values():
            counts[record.status.value] += 1
        return counts

    # ── Hooks ─────────────────────────────────────────────

    def _changed(self) -> None:
        """Called under the lock after every mutation. Persistent subclasses flush here."""

    def _snapshot(self, records: list[NotificationRecord]) -> dict[str, NotificationRecord]:
        return {r.id: r.model_copy(deep=True) for r in records}

    def _commit(self, snapshot: dict[str, NotificationRecord]) -> None:
        """Persist a mutation; if that fails, put the snapshotted records back."""
        try:
            self._changed()
        except Exception:
            self._records.update(snapshot)
            raise
