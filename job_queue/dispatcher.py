"""
Dispatcher — Polls the record store and drives deliveries.

Runs as a background asyncio task inside the API process or the worker
script. Several dispatchers (tasks or processes) may share one store; the
store's atomic claim is the only coordination between them.

Cycle:
  ┌──────────────┐  claim_batch   ┌──────────────┐  deliver   ┌───────────┐
  │ Record Store │───────────────▶│  Dispatcher  │───────────▶│ Transport │
  │  (pending)   │                │  (in_flight) │◀───────────│           │
  └──────▲───────┘                └──────┬───────┘  result    └───────────┘
         │        update_status          │
         └───────────────────────────────┘
            sent | pending (+backoff) | failed

Usage:
    dispatcher = Dispatcher(store, transport)
    dispatcher.start()          # background task
    await dispatcher.run_cycle()  # or drive cycles by hand (tests, cron)
    await dispatcher.stop()     # finish running attempts, release the rest, exit
"""
from __future__ import annotations

import asyncio
import os
import socket
import time
import structlog
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from database.store_base import BaseRecordStore
from job_queue.errors import ConfigurationError
from job_queue.retry import RetryPolicy
from job_queue.state import StatusUpdate, release_claim, resolve_attempt
from models.schemas import DeliveryResult, NotificationRecord, NotificationStatus, utcnow
from transport.base import Transport

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def default_worker_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


# ──────────────────────────────────────────────────────────────
#  Metrics
# ──────────────────────────────────────────────────────────────

class DispatcherMetrics:
    """Cumulative cycle, outcome, and latency counters for one dispatcher."""

    def __init__(self, max_reasons: int = 20, max_latencies: int = 1000):
        self.cycles: int = 0
        self.claimed: int = 0
        self.sent: int = 0
        self.retried: int = 0
        self.failed: int = 0
        self.released: int = 0
        self.errors: int = 0
        self.recovered: int = 0
        self.last_cycle_at: Optional[datetime] = None
        self._latencies: deque[float] = deque(maxlen=max_latencies)
        self._reasons: deque[str] = deque(maxlen=max_reasons)

    def record_cycle(self, stats: dict[str, int], at: datetime):
        self.cycles += 1
        self.last_cycle_at = at
        self.claimed += stats["claimed"]
        self.sent += stats["sent"]
        self.retried += stats["retried"]
        self.failed += stats["failed"]
        self.released += stats["released"]
        self.errors += stats["errors"]

    def record_latency(self, latency_ms: float):
        self._latencies.append(latency_ms)

    def record_failure_reason(self, reason: str):
        if reason:
            self._reasons.append(reason)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def recent_failures(self) -> list[str]:
        return list(self._reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "claimed": self.claimed,
            "sent": self.sent,
            "retried": self.retried,
            "failed": self.failed,
            "released": self.released,
            "errors": self.errors,
            "recovered": self.recovered,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "recent_failures": self.recent_failures,
        }


# ──────────────────────────────────────────────────────────────
#  Dispatcher
# ──────────────────────────────────────────────────────────────

class Dispatcher:
    """
    Claims due records in batches and delivers each one independently.

    A failure (result, exception, or timeout) in one delivery only affects
    that record. A store failure while claiming aborts the cycle; a store
    failure while writing a result leaves the record in_flight until the
    next startup recovery.

    Records in a batch larger than ``concurrency`` wait for a delivery slot.
    Each one refreshes its claim when its slot opens, so the stale window
    only has to cover a single attempt, not the whole batch.
    """

    def __init__(
        self,
        store: BaseRecordStore,
        transport: Transport,
        policy: RetryPolicy = None,
        poll_interval_s: float = 5.0,
        batch_size: int = 10,
        concurrency: int = 5,
        delivery_timeout_s: float = 10.0,
        stale_after_s: float = 60.0,
        shutdown_grace_s: Optional[float] = None,
        worker_name: str = "",
        clock: Clock = None,
        recover_on_start: bool = True,
    ):
        if not getattr(store, "atomic_claim", False):
            raise ConfigurationError(
                f"{type(store).__name__} does not provide an atomic claim; "
                "refusing to dispatch from it"
            )
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {batch_size}")
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {concurrency}")
        if poll_interval_s <= 0:
            raise ConfigurationError(f"poll_interval_s must be > 0, got {poll_interval_s}")
        if delivery_timeout_s <= 0:
            raise ConfigurationError(f"delivery_timeout_s must be > 0, got {delivery_timeout_s}")
        if stale_after_s <= delivery_timeout_s:
            raise ConfigurationError(
                f"stale_after_s ({stale_after_s}) must exceed delivery_timeout_s ({delivery_timeout_s})"
            )

        self.store = store
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.poll_interval_s = poll_interval_s
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.delivery_timeout_s = delivery_timeout_s
        self.stale_after_s = stale_after_s
        self.shutdown_grace_s = (
            shutdown_grace_s if shutdown_grace_s is not None else delivery_timeout_s + 5
        )
        self.worker_name = worker_name or default_worker_name()
        self.recover_on_start = recover_on_start
        self.metrics = DispatcherMetrics()

        self._clock = clock or utcnow
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings,
        store: BaseRecordStore,
        transport: Transport,
        clock: Clock = None,
    ) -> Dispatcher:
        """Build from a Settings object (uses its ``dispatch`` section)."""
        cfg = settings.dispatch
        return cls(
            store=store,
            transport=transport,
            policy=RetryPolicy.from_config(cfg),
            poll_interval_s=cfg.poll_interval_s,
            batch_size=cfg.batch_size,
            concurrency=cfg.concurrency,
            delivery_timeout_s=cfg.delivery_timeout_s,
            stale_after_s=cfg.stale_after_s,
            shutdown_grace_s=cfg.shutdown_grace_s,
            worker_name=cfg.worker_name,
            clock=clock,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the poll loop as a background task. Returns the task handle."""
        if self.is_running:
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"dispatcher-{self.worker_name}")
        logger.info("dispatcher_started",
                    worker=self.worker_name,
                    poll_interval_s=self.poll_interval_s,
                    batch_size=self.batch_size,
                    concurrency=self.concurrency)
        return self._task

    async def stop(self):
        """
        Stop claiming new batches and let the cycle in progress finish.

        Attempts already running complete and record their result. Claimed
        records still waiting for a delivery slot are released back to
        pending untried. If the cycle has not finished within
        ``shutdown_grace_s`` the task is cancelled; records it held stay
        in_flight until stale recovery.
        """
        if self._task is None:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.shutdown_grace_s)
            logger.info("dispatcher_stopped", worker=self.worker_name)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.warning("dispatcher_stop_forced",
                           worker=self.worker_name,
                           grace_s=self.shutdown_grace_s)

    async def _run(self):
        if self.recover_on_start:
            try:
                await self.recover_stale()
            except Exception as e:
                logger.error("stale_recovery_failed", worker=self.worker_name, error=str(e))

        while not self._stop_event.is_set():
            stats = await self.run_cycle()
            if stats["claimed"] >= self.batch_size and not self._stop_event.is_set():
                continue  # backlog: claim the next batch right away
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

    # ── Recovery ──────────────────────────────────────────────

    async def recover_stale(self) -> int:
        """Return in_flight records abandoned by a crashed worker to pending."""
        now = self._clock()
        older_than = now - timedelta(seconds=self.stale_after_s)
        recovered = await self.store.recover_stale(older_than, now)
        if recovered:
            self.metrics.recovered += recovered
            logger.warning("stale_records_recovered",
                           worker=self.worker_name,
                           count=recovered,
                           older_than=older_than.isoformat())
        return recovered

    # ── Cycle ─────────────────────────────────────────────────

    async def run_cycle(self) -> dict[str, int]:
        """Claim one batch, deliver it, apply the results. Returns per-cycle counts."""
        stats = {"claimed": 0, "sent": 0, "retried": 0, "failed": 0, "released": 0, "errors": 0}
        now = self._clock()

        try:
            batch = await self.store.claim_batch(self.batch_size, now, worker=self.worker_name)
        except Exception as e:
            logger.error("claim_failed", worker=self.worker_name, error=str(e))
            stats["errors"] = 1
            self.metrics.record_cycle(stats, now)
            return stats

        if not batch:
            self.metrics.record_cycle(stats, now)
            return stats

        stats["claimed"] = len(batch)
        logger.info("batch_claimed", worker=self.worker_name, count=len(batch))

        outcomes = await asyncio.gather(*(self._dispatch_one(record) for record in batch))
        for outcome in outcomes:
            stats[outcome] += 1

        self.metrics.record_cycle(stats, now)
        logger.info("cycle_complete", worker=self.worker_name, **stats)
        return stats

    async def _attempt(self, record: NotificationRecord) -> DeliveryResult:
        try:
            result = await asyncio.wait_for(
                self.transport.deliver(record.recipient, record.subject, record.body),
                timeout=self.delivery_timeout_s,
            )
        except asyncio.TimeoutError:
            return DeliveryResult.failure(f"delivery timed out after {self.delivery_timeout_s:g}s")
        except Exception as e:
            return DeliveryResult.failure(f"{type(e).__name__}: {e}")
        if not isinstance(result, DeliveryResult):
            return DeliveryResult.failure(f"transport returned {type(result).__name__}, not a DeliveryResult")
        return result

    async def _dispatch_one(self, record: NotificationRecord) -> str:
        """Deliver one claimed record and write its outcome. Returns the outcome key."""
        async with self._semaphore:
            if self._stop_event.is_set():
                return await self._release(record)
            if not await self._refresh_claim(record):
                return "errors"
            started = time.monotonic()
            result = await self._attempt(record)
            self.metrics.record_latency((time.monotonic() - started) * 1000)

        now = self._clock()
        update = resolve_attempt(record, result, now, self.policy)
        if not await self._write(record, update, now):
            return "errors"

        if update.outcome == "sent":
            logger.info("notification_sent",
                        record_id=record.id,
                        attempt=update.attempt_count,
                        provider_message_id=result.provider_message_id)
        elif update.outcome == "retried":
            self.metrics.record_failure_reason(result.reason)
            logger.warning("notification_retry_scheduled",
                           record_id=record.id,
                           attempt=update.attempt_count,
                           next_attempt_at=update.next_attempt_at.isoformat(),
                           reason=result.reason)
        else:
            self.metrics.record_failure_reason(result.reason)
            logger.error("notification_failed",
                         record_id=record.id,
                         attempts=update.attempt_count,
                         reason=result.reason)
        return update.outcome

    async def _refresh_claim(self, record: NotificationRecord) -> bool:
        """Restart the stale clock right before the attempt; False means the claim is gone."""
        try:
            held = await self.store.refresh_claim(record.id, self.worker_name, self._clock())
        except Exception as e:
            logger.error("claim_refresh_failed", record_id=record.id, error=str(e))
            return False
        if not held:
            logger.warning("claim_lost", record_id=record.id, worker=self.worker_name)
        return held

    async def _release(self, record: NotificationRecord) -> str:
        """Shutdown: hand a claimed but unattempted record back to pending."""
        now = self._clock()
        if not await self._write(record, release_claim(record, now), now):
            return "errors"
        logger.info("claim_released", record_id=record.id, worker=self.worker_name)
        return "released"

    async def _write(self, record: NotificationRecord, update: StatusUpdate, now: datetime) -> bool:
        try:
            applied = await self.store.update_status(
                record.id,
                update.status,
                update.attempt_count,
                update.next_attempt_at,
                update.failure_reason,
                expected_status=NotificationStatus.IN_FLIGHT,
                claimed_by=self.worker_name,
                now=now,
            )
        except Exception as e:
            logger.error("status_write_failed",
                         record_id=record.id,
                         target_status=update.status.value,
                         error=str(e))
            return False

        if not applied:
            logger.warning("status_write_rejected",
                           record_id=record.id,
                           target_status=update.status.value)
        return applied
