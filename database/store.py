"""
SqlRecordStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Claim protocol (one transaction):
  1. SELECT ids of due pending rows, oldest-due first
     (FOR UPDATE SKIP LOCKED on PostgreSQL / MySQL so concurrent
     dispatchers skip each other's candidates instead of blocking)
  2. UPDATE each row SET status='in_flight' WHERE id=:id AND status='pending'
  3. Only rows whose guarded UPDATE matched are returned as claimed

Step 2 is what makes the claim safe on every dialect: even if two
transactions pick the same candidate, only one UPDATE can see it pending.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from database.models import NotificationRow
from database.session import get_session, make_session_factory, get_engine
from database.store_base import BaseRecordStore
from models.schemas import NotificationRecord, NotificationStatus, utcnow

logger = structlog.get_logger()

_ROW_LOCKING_DIALECTS = {"postgresql", "mysql"}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRecordStore(BaseRecordStore):
    """
    Persistent record store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    Uses the global engine from database.session unless one is injected.
    """

    atomic_claim = True

    def __init__(self, engine: AsyncEngine | None = None):
        self._engine = engine
        self._factory: async_sessionmaker[AsyncSession] | None = (
            make_session_factory(engine) if engine is not None else None
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine or get_engine()

    def _session(self):
        return get_session(self._factory)

    # ── Record operations ──────────────────────────────────

    async def create(self, record: NotificationRecord) -> str:
        async with self._session() as db:
            db.add(self._record_to_row(record))
        return record.id

    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        async with self._session() as db:
            row = await db.get(NotificationRow, record_id)
            return self._row_to_record(row) if row else None

    # ── Dispatch operations ────────────────────────────────

    async def claim_batch(
        self, limit: int, now: datetime, worker: str = "",
    ) -> list[NotificationRecord]:
        if limit <= 0:
            return []
        async with self._session() as db:
            stmt = (
                select(NotificationRow.id)
                .where(
                    NotificationRow.status == NotificationStatus.PENDING.value,
                    NotificationRow.next_attempt_at <= now,
                )
                .order_by(NotificationRow.next_attempt_at, NotificationRow.created_at)
                .limit(limit)
            )
            if self.engine.dialect.name in _ROW_LOCKING_DIALECTS:
                stmt = stmt.with_for_update(skip_locked=True)
            candidate_ids = list((await db.execute(stmt)).scalars().all())
            if not candidate_ids:
                return []

            claimed_ids = []
            for record_id in candidate_ids:
                result = await db.execute(
                    update(NotificationRow)
                    .where(
                        NotificationRow.id == record_id,
                        NotificationRow.status == NotificationStatus.PENDING.value,
                    )
                    .values(
                        status=NotificationStatus.IN_FLIGHT.value,
                        claimed_by=worker,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(record_id)

            if not claimed_ids:
                return []
            rows = (await db.execute(
                select(NotificationRow).where(NotificationRow.id.in_(claimed_ids))
            )).scalars().all()
            by_id = {row.id: self._row_to_record(row) for row in rows}
            return [by_id[rid] for rid in claimed_ids if rid in by_id]

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
        values = {
            "status": status.value,
            "attempt_count": attempt_count,
            "next_attempt_at": next_attempt_at,
            "last_failure_reason": failure_reason,
            "claimed_by": "",
            "updated_at": now,
        }
        if status == NotificationStatus.SENT:
            values["sent_at"] = now

        stmt = update(NotificationRow).where(NotificationRow.id == record_id)
        if expected_status is not None:
            stmt = stmt.where(NotificationRow.status == expected_status.value)
        if claimed_by is not None:
            stmt = stmt.where(NotificationRow.claimed_by == claimed_by)

        async with self._session() as db:
            result = await db.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def refresh_claim(self, record_id: str, worker: str, now: datetime) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.id == record_id,
                    NotificationRow.status == NotificationStatus.IN_FLIGHT.value,
                    NotificationRow.claimed_by == worker,
                )
                .values(updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def recover_stale(self, older_than: datetime, now: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.status == NotificationStatus.IN_FLIGHT.value,
                    NotificationRow.updated_at < older_than,
                )
                .values(
                    status=NotificationStatus.PENDING.value,
                    claimed_by="",
                    next_attempt_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ── Observability ──────────────────────────────────────

    async def list_by_status(
        self,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
        offset: int = 0,
        category: Optional[str] = None,
    ) -> list[NotificationRecord]:
        stmt = select(NotificationRow)
        if status is not None:
            stmt = stmt.where(NotificationRow.status == status.value)
        if category is not None:
            stmt = stmt.where(NotificationRow.category == category)
        stmt = stmt.order_by(NotificationRow.created_at, NotificationRow.id).offset(offset).limit(limit)

        async with self._session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_record(r) for r in rows]

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in NotificationStatus}
        async with self._session() as db:
            result = await db.execute(
                select(NotificationRow.status, func.count()).group_by(NotificationRow.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _record_to_row(record: NotificationRecord) -> NotificationRow:
        return NotificationRow(
            id=record.id,
            recipient=record.recipient,
            subject=record.subject,
            body=record.body,
            category=record.category,
            correlation_ref=record.correlation_ref,
            metadata_=record.metadata,
            status=record.status.value,
            attempt_count=record.attempt_count,
            max_attempts=record.max_attempts,
            next_attempt_at=record.next_attempt_at,
            last_failure_reason=record.last_failure_reason,
            claimed_by=record.claimed_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
            sent_at=record.sent_at,
        )

    @staticmethod
    def _row_to_record(row: NotificationRow) -> NotificationRecord:
        return NotificationRecord(
            id=row.id,
            recipient=row.recipient,
            subject=row.subject or "",
            body=row.body,
            category=row.category,
            correlation_ref=row.correlation_ref or "",
            metadata=row.metadata_ or {},
            status=NotificationStatus(row.status),
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            next_attempt_at=_aware(row.next_attempt_at),
            last_failure_reason=row.last_failure_reason,
            claimed_by=row.claimed_by or "",
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            sent_at=_aware(row.sent_at),
        )
