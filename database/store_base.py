"""
Abstract Record Store — Interface for all notification storage backends.

Implementations:
  - SqlRecordStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryRecordStore (dict-based, single-process, no persistence)
  - FileRecordStore     (JSON file on disk, single-process, durable)

Every backend must make ``claim_batch`` atomic: selecting due records and
marking them in_flight happens as one step, so two dispatchers can never
claim the same record. Backends advertise this with ``atomic_claim = True``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import NotificationRecord, NotificationStatus


class StoreUnavailableError(Exception):
    """The record store could not be reached or refused the operation."""


class BaseRecordStore(ABC):
    """Interface that all record store backends must implement."""

    atomic_claim: bool = False

    # ── Records ───────────────────────────────────────────────

    @abstractmethod
    async def create(self, record: NotificationRecord) -> str:
        """Persist a new record durably and return its id."""
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        ...

    # ── Dispatch ──────────────────────────────────────────────

    @abstractmethod
    async def claim_batch(
        self, limit: int, now: datetime, worker: str = "",
    ) -> list[NotificationRecord]:
        """
        Atomically select up to ``limit`` pending records due at ``now`` and
        mark them in_flight. Ordered by next_attempt_at, then created_at.
        """
        ...

    @abstractmethod
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
        """
        Write the outcome of an attempt (or an operator reset).

        When ``expected_status`` is given the write only applies if the
        record currently has that status; ``claimed_by`` likewise requires
        the record to still be held by that worker. Returns True if a row
        changed.
        """
        ...

    @abstractmethod
    async def refresh_claim(self, record_id: str, worker: str, now: datetime) -> bool:
        """
        Restamp ``updated_at`` on an in_flight record held by ``worker``.

        Dispatchers call this right before each attempt so stale recovery
        measures from the attempt start, not the claim. Returns False if the
        record was recovered or claimed by someone else in the meantime.
        """
        ...

    @abstractmethod
    async def recover_stale(self, older_than: datetime, now: datetime) -> int:
        """Return in_flight records last touched before ``older_than`` to pending."""
        ...

    # ── Observability ─────────────────────────────────────────

    @abstractmethod
    async def list_by_status(
        self,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
        offset: int = 0,
        category: Optional[str] = None,
    ) -> list[NotificationRecord]:
        """Records ordered by created_at, optionally filtered."""
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        """Counts keyed by status value; every status is present."""
        ...

    async def close(self) -> None:
        pass
