"""
Tests for the Dispatcher — cycles, retries, isolation, concurrency, shutdown.

Time inside the queue comes from FakeClock, so backoff assertions are exact;
only the shutdown and timeout tests use real (short) sleeps.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import HANG, FakeClock, ScriptedTransport
from database.store_base import StoreUnavailableError
from database.store_memory import InMemoryRecordStore
from job_queue.dispatcher import Dispatcher, DispatcherMetrics
from job_queue.errors import ConfigurationError
from job_queue.retry import RetryPolicy
from job_queue.service import NotificationQueue
from models.schemas import NotificationStatus as S


async def enqueue_many(queue: NotificationQueue, n: int, prefix: str = "user") -> list:
    return [
        await queue.enqueue(f"{prefix}{i}@example.com", f"Subject {i}", f"Body {i}")
        for i in range(n)
    ]


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class GatedTransport(ScriptedTransport):
    """Each delivery is recorded, then blocks until the test opens the gate for it."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.gate = asyncio.Semaphore(0)

    async def deliver(self, recipient, subject, body):
        result = await super().deliver(recipient, subject, body)
        await self.gate.acquire()
        return result

    def open(self, n: int):
        for _ in range(n):
            self.gate.release()


# ──────────────────────────────────────────────────────────────
#  Construction
# ──────────────────────────────────────────────────────────────

class TestDispatcherConfiguration:
    def test_rejects_store_without_atomic_claim(self, transport):
        class UnsafeStore(InMemoryRecordStore):
            atomic_claim = False

        with pytest.raises(ConfigurationError, match="atomic claim"):
            Dispatcher(UnsafeStore(), transport)

    def test_rejects_stale_window_not_exceeding_timeout(self, memory_store, transport):
        with pytest.raises(ConfigurationError, match="stale_after_s"):
            Dispatcher(memory_store, transport, delivery_timeout_s=30, stale_after_s=30)

    def test_rejects_empty_batch(self, memory_store, transport):
        with pytest.raises(ConfigurationError, match="batch_size"):
            Dispatcher(memory_store, transport, batch_size=0)

    def test_default_grace_period(self, memory_store, transport):
        d = Dispatcher(memory_store, transport, delivery_timeout_s=10)
        assert d.shutdown_grace_s == 15

    def test_default_worker_name(self, memory_store, transport):
        d = Dispatcher(memory_store, transport)
        assert d.worker_name

    def test_from_settings(self, memory_store, transport):
        from config.settings import Settings, DispatchConfig
        settings = Settings(dispatch=DispatchConfig(
            batch_size=25, poll_interval_s=2.0, max_attempts=5, worker_name="w-7",
        ))
        d = Dispatcher.from_settings(settings, memory_store, transport)
        assert d.batch_size == 25
        assert d.poll_interval_s == 2.0
        assert d.policy.max_attempts == 5
        assert d.worker_name == "w-7"


# ──────────────────────────────────────────────────────────────
#  Single cycles
# ──────────────────────────────────────────────────────────────

class TestRunCycle:
    @pytest.mark.asyncio
    async def test_idle_cycle_is_silent(self, dispatcher, transport, monkeypatch):
        fake_logger = MagicMock()
        monkeypatch.setattr("job_queue.dispatcher.logger", fake_logger)

        stats = await dispatcher.run_cycle()

        assert stats == {"claimed": 0, "sent": 0, "retried": 0, "failed": 0, "released": 0, "errors": 0}
        assert transport.calls == []
        assert fake_logger.method_calls == []
        assert dispatcher.metrics.cycles == 1

    @pytest.mark.asyncio
    async def test_twelve_records_batch_of_ten(self, queue, dispatcher, transport):
        await enqueue_many(queue, 12)

        first = await dispatcher.run_cycle()
        assert first["claimed"] == 10
        assert first["sent"] == 10
        assert (await queue.get_stats()).sent == 10

        second = await dispatcher.run_cycle()
        assert second["claimed"] == 2
        assert second["sent"] == 2

        stats = await queue.get_stats()
        assert stats.sent == 12
        assert stats.pending == 0
        assert len(transport.calls) == 12

    @pytest.mark.asyncio
    async def test_delivers_in_enqueue_order(self, queue, dispatcher, transport, clock):
        for i in range(3):
            await queue.enqueue(f"user{i}@example.com", "s", "b")
            clock.advance(1)
        await dispatcher.run_cycle()
        assert transport.recipients == ["user0@example.com", "user1@example.com", "user2@example.com"]

    @pytest.mark.asyncio
    async def test_success_records_sent(self, queue, dispatcher, memory_store, clock):
        record = await queue.enqueue("a@example.com", "Welcome", "<p>Hello</p>")
        await dispatcher.run_cycle()

        stored = await memory_store.get(record.id)
        assert stored.status == S.SENT
        assert stored.attempt_count == 1
        assert stored.sent_at == clock.now
        assert stored.last_failure_reason is None
        assert stored.claimed_by == ""


# ──────────────────────────────────────────────────────────────
#  Retry behaviour
# ──────────────────────────────────────────────────────────────

class TestRetries:
    @pytest.mark.asyncio
    async def test_fail_fail_succeed(self, queue, dispatcher, transport, memory_store, clock):
        transport.script = ["smtp 451", "smtp 451", True]
        record = await queue.enqueue("a@example.com", "s", "b")
        start = clock.now

        assert (await dispatcher.run_cycle())["retried"] == 1
        stored = await memory_store.get(record.id)
        assert stored.status == S.PENDING
        assert stored.next_attempt_at == start + timedelta(seconds=1)

        # Not due yet
        assert (await dispatcher.run_cycle())["claimed"] == 0

        clock.advance(1)
        assert (await dispatcher.run_cycle())["retried"] == 1
        stored = await memory_store.get(record.id)
        assert stored.next_attempt_at == clock.now + timedelta(seconds=2)

        clock.advance(1)
        assert (await dispatcher.run_cycle())["claimed"] == 0
        clock.advance(1)
        assert (await dispatcher.run_cycle())["sent"] == 1

        stored = await memory_store.get(record.id)
        assert stored.status == S.SENT
        assert stored.attempt_count == 3
        assert stored.last_failure_reason is None

        times = [c["at"] for c in transport.calls]
        assert times[1] - times[0] == timedelta(seconds=1)
        assert times[2] - times[1] == timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_always_failing_ends_failed(self, queue, dispatcher, transport, memory_store, clock):
        transport.default = "mailbox unavailable"
        record = await queue.enqueue("a@example.com", "s", "b")

        outcomes = []
        for _ in range(3):
            stats = await dispatcher.run_cycle()
            outcomes.append("failed" if stats["failed"] else "retried" if stats["retried"] else "none")
            clock.advance(10)
        assert outcomes == ["retried", "retried", "failed"]

        stored = await memory_store.get(record.id)
        assert stored.status == S.FAILED
        assert stored.attempt_count == 3
        assert stored.last_failure_reason == "mailbox unavailable"
        assert stored.next_attempt_at is None
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_terminal_records_never_redispatched(self, queue, dispatcher, transport, memory_store, clock):
        transport.by_recipient = {"bad@example.com": "rejected"}
        ok = await queue.enqueue("good@example.com", "s", "b")
        bad = await queue.enqueue("bad@example.com", "s", "b")
        for _ in range(3):
            await dispatcher.run_cycle()
            clock.advance(10)
        calls_before = len(transport.calls)
        ok_before = await memory_store.get(ok.id)
        bad_before = await memory_store.get(bad.id)

        for _ in range(5):
            clock.advance(3600)
            await dispatcher.run_cycle()

        assert len(transport.calls) == calls_before
        assert await memory_store.get(ok.id) == ok_before
        assert await memory_store.get(bad.id) == bad_before

    @pytest.mark.asyncio
    async def test_uses_max_attempts_captured_at_enqueue(self, memory_store, transport, clock):
        queue = NotificationQueue(memory_store, policy=RetryPolicy(max_attempts=1), clock=clock)
        record = await queue.enqueue("a@example.com", "s", "b")
        transport.default = "nope"
        d = Dispatcher(memory_store, transport, policy=RetryPolicy(max_attempts=5), clock=clock)
        await d.run_cycle()
        assert (await memory_store.get(record.id)).status == S.FAILED


# ──────────────────────────────────────────────────────────────
#  Failure isolation
# ──────────────────────────────────────────────────────────────

class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_one_bad_delivery_does_not_affect_batch(self, queue, dispatcher, transport, memory_store):
        transport.by_recipient = {
            "boom@example.com": RuntimeError("connection reset"),
            "reject@example.com": "550 no such user",
        }
        good = await queue.enqueue("good@example.com", "s", "b")
        boom = await queue.enqueue("boom@example.com", "s", "b")
        reject = await queue.enqueue("reject@example.com", "s", "b")

        stats = await dispatcher.run_cycle()
        assert stats == {"claimed": 3, "sent": 1, "retried": 2, "failed": 0, "released": 0, "errors": 0}

        assert (await memory_store.get(good.id)).status == S.SENT
        boom_rec = await memory_store.get(boom.id)
        assert boom_rec.status == S.PENDING
        assert boom_rec.last_failure_reason == "RuntimeError: connection reset"
        assert (await memory_store.get(reject.id)).last_failure_reason == "550 no such user"

    @pytest.mark.asyncio
    async def test_delivery_timeout_is_a_failure(self, queue, memory_store, clock):
        transport = ScriptedTransport(by_recipient={"slow@example.com": HANG}, clock=clock)
        d = Dispatcher(memory_store, transport, delivery_timeout_s=0.05, stale_after_s=60, clock=clock)
        slow = await queue.enqueue("slow@example.com", "s", "b")
        fast = await queue.enqueue("fast@example.com", "s", "b")

        stats = await d.run_cycle()
        assert stats["sent"] == 1
        assert stats["retried"] == 1

        slow_rec = await memory_store.get(slow.id)
        assert slow_rec.status == S.PENDING
        assert slow_rec.attempt_count == 1
        assert slow_rec.last_failure_reason == "delivery timed out after 0.05s"
        assert (await memory_store.get(fast.id)).status == S.SENT

    @pytest.mark.asyncio
    async def test_claim_failure_aborts_cycle(self, queue, dispatcher, transport, memory_store):
        record = await queue.enqueue("a@example.com", "s", "b")
        dispatcher.store.claim_batch = AsyncMock(side_effect=StoreUnavailableError("db down"))

        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        assert stats["claimed"] == 0
        assert transport.calls == []
        assert (await memory_store.get(record.id)).status == S.PENDING

    @pytest.mark.asyncio
    async def test_result_write_failure_leaves_in_flight(self, queue, dispatcher, memory_store):
        record = await queue.enqueue("a@example.com", "s", "b")
        original_update = memory_store.update_status
        memory_store.update_status = AsyncMock(side_effect=StoreUnavailableError("db down"))

        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        memory_store.update_status = original_update
        assert (await memory_store.get(record.id)).status == S.IN_FLIGHT

    @pytest.mark.asyncio
    async def test_claim_refresh_failure_skips_attempt(self, queue, dispatcher, transport, memory_store):
        record = await queue.enqueue("a@example.com", "s", "b")
        memory_store.refresh_claim = AsyncMock(side_effect=StoreUnavailableError("db down"))

        stats = await dispatcher.run_cycle()
        assert stats["errors"] == 1
        assert transport.calls == []
        stored = await memory_store.get(record.id)
        assert stored.status == S.IN_FLIGHT
        assert stored.attempt_count == 0

    @pytest.mark.asyncio
    async def test_failed_claim_flush_leaves_no_trace(self, clock, monkeypatch, tmp_path):
        from database.store_file import FileRecordStore
        store = FileRecordStore(data_dir=str(tmp_path))
        queue = NotificationQueue(store, clock=clock)
        record = await queue.enqueue("a@example.com", "s", "b")
        transport = ScriptedTransport(clock=clock)
        d = Dispatcher(store, transport, clock=clock)

        def broken_replace(self, target):
            raise OSError("disk full")

        monkeypatch.setattr("pathlib.Path.replace", broken_replace)
        stats = await d.run_cycle()
        monkeypatch.undo()

        assert stats["errors"] == 1
        assert (await store.get(record.id)).status == S.PENDING

        stats = await d.run_cycle()
        assert stats["claimed"] == 1
        assert stats["sent"] == 1
        assert transport.recipients == ["a@example.com"]

    @pytest.mark.asyncio
    async def test_rejected_write_is_discarded(self, queue, memory_store, clock):
        record = await queue.enqueue("a@example.com", "s", "b")

        class MeddlingTransport(ScriptedTransport):
            async def deliver(self, recipient, subject, body):
                # Someone else moves the record while delivery is in progress
                await memory_store.update_status(record.id, S.FAILED, 3, None, "out of band", now=clock.now)
                return await super().deliver(recipient, subject, body)

        d = Dispatcher(memory_store, MeddlingTransport(clock=clock), clock=clock)
        stats = await d.run_cycle()
        assert stats["errors"] == 1
        stored = await memory_store.get(record.id)
        assert stored.status == S.FAILED
        assert stored.last_failure_reason == "out of band"

    @pytest.mark.asyncio
    async def test_non_result_return_is_a_failure(self, queue, memory_store, clock):
        class SloppyTransport(ScriptedTransport):
            async def deliver(self, recipient, subject, body):
                return {"ok": True}

        record = await queue.enqueue("a@example.com", "s", "b")
        d = Dispatcher(memory_store, SloppyTransport(), clock=clock)
        await d.run_cycle()
        stored = await memory_store.get(record.id)
        assert stored.status == S.PENDING
        assert "DeliveryResult" in stored.last_failure_reason


# ──────────────────────────────────────────────────────────────
#  Concurrency
# ──────────────────────────────────────────────────────────────

class TestConcurrentDispatchers:
    @pytest.mark.asyncio
    async def test_each_record_delivered_once(self, memory_store, clock):
        queue = NotificationQueue(memory_store, clock=clock)
        records = await enqueue_many(queue, 60)
        transport = ScriptedTransport(clock=clock, delay=0.001)
        dispatchers = [
            Dispatcher(memory_store, transport, batch_size=7, worker_name=f"w{i}", clock=clock)
            for i in range(5)
        ]

        for _ in range(20):
            await asyncio.gather(*(d.run_cycle() for d in dispatchers))
            if (await queue.get_stats()).sent == len(records):
                break

        assert sorted(transport.recipients) == sorted(r.recipient for r in records)
        assert len(set(transport.recipients)) == len(records)
        assert sum(d.metrics.sent for d in dispatchers) == len(records)
        stats = await queue.get_stats()
        assert stats.sent == 60
        assert stats.in_flight == 0

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, queue, memory_store, clock):
        active = 0
        peak = 0

        class CountingTransport(ScriptedTransport):
            async def deliver(self, recipient, subject, body):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().deliver(recipient, subject, body)

        await enqueue_many(queue, 10)
        d = Dispatcher(memory_store, CountingTransport(), concurrency=3, clock=clock)
        stats = await d.run_cycle()
        assert stats["sent"] == 10
        assert peak <= 3


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_loop_drains_backlog(self, queue, memory_store, clock):
        await enqueue_many(queue, 25)
        transport = ScriptedTransport(clock=clock)
        d = Dispatcher(memory_store, transport, poll_interval_s=5.0, batch_size=10, clock=clock)

        d.start()
        assert d.is_running
        try:
            await wait_until(lambda: len(transport.calls) == 25)
        finally:
            await d.stop()
        assert not d.is_running
        assert (await queue.get_stats()).sent == 25

    @pytest.mark.asyncio
    async def test_graceful_stop_finishes_cycle(self, queue, memory_store, clock):
        record = await queue.enqueue("a@example.com", "s", "b")
        transport = ScriptedTransport(clock=clock, delay=0.2)
        d = Dispatcher(memory_store, transport, poll_interval_s=0.01, clock=clock)

        d.start()
        await wait_until(lambda: transport.calls)
        await d.stop()

        assert (await memory_store.get(record.id)).status == S.SENT
        assert not d.is_running

    @pytest.mark.asyncio
    async def test_stop_releases_records_waiting_for_a_slot(self, queue, memory_store, clock):
        records = await enqueue_many(queue, 15)
        transport = GatedTransport(clock=clock)
        d = Dispatcher(memory_store, transport, poll_interval_s=0.01, batch_size=15,
                       concurrency=5, delivery_timeout_s=3, worker_name="w1", clock=clock)
        assert d.shutdown_grace_s == 8

        d.start()
        await wait_until(lambda: len(transport.calls) == 5)
        stopping = asyncio.create_task(d.stop())
        await asyncio.sleep(0)
        transport.open(5)
        await asyncio.wait_for(stopping, timeout=2)

        assert not d.is_running
        assert len(transport.calls) == 5
        stats = await queue.get_stats()
        assert stats.sent == 5
        assert stats.pending == 10
        assert stats.in_flight == 0
        assert d.metrics.released == 10

        delivered = set(transport.recipients)
        for record in records:
            stored = await memory_store.get(record.id)
            if record.recipient not in delivered:
                assert stored.attempt_count == 0
                assert stored.claimed_by == ""
                assert stored.next_attempt_at == clock.now

    @pytest.mark.asyncio
    async def test_stop_without_start(self, dispatcher):
        await dispatcher.stop()
        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_stop_forced_after_grace(self, queue, memory_store, clock):
        record = await queue.enqueue("a@example.com", "s", "b")
        transport = ScriptedTransport(clock=clock, default=HANG)
        d = Dispatcher(memory_store, transport, poll_interval_s=0.01,
                       delivery_timeout_s=5, stale_after_s=60, shutdown_grace_s=0.1, clock=clock)

        d.start()
        await wait_until(lambda: transport.calls)
        await asyncio.wait_for(d.stop(), timeout=2)

        assert not d.is_running
        # Interrupted mid-delivery: left for stale recovery
        assert (await memory_store.get(record.id)).status == S.IN_FLIGHT

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, dispatcher):
        t1 = dispatcher.start()
        t2 = dispatcher.start()
        assert t1 is t2
        await dispatcher.stop()


# ──────────────────────────────────────────────────────────────
#  Stale recovery
# ──────────────────────────────────────────────────────────────

class TestStaleRecovery:
    @pytest.mark.asyncio
    async def test_recovers_abandoned_claims(self, queue, dispatcher, memory_store, transport, clock):
        record = await queue.enqueue("a@example.com", "s", "b")
        await memory_store.claim_batch(10, clock.now, worker="crashed-worker")
        clock.advance(120)

        assert await dispatcher.recover_stale() == 1
        assert dispatcher.metrics.recovered == 1
        stored = await memory_store.get(record.id)
        assert stored.status == S.PENDING
        assert stored.attempt_count == 0

        await dispatcher.run_cycle()
        stored = await memory_store.get(record.id)
        assert stored.status == S.SENT
        assert stored.attempt_count == 1

    @pytest.mark.asyncio
    async def test_recent_claims_left_alone(self, queue, dispatcher, memory_store, clock):
        record = await queue.enqueue("a@example.com", "s", "b")
        await memory_store.claim_batch(10, clock.now, worker="other-worker")
        clock.advance(30)

        assert await dispatcher.recover_stale() == 0
        assert (await memory_store.get(record.id)).status == S.IN_FLIGHT

    @pytest.mark.asyncio
    async def test_recovery_runs_on_start(self, queue, memory_store, clock):
        record = await queue.enqueue("a@example.com", "s", "b")
        await memory_store.claim_batch(10, clock.now, worker="crashed-worker")
        clock.advance(120)

        transport = ScriptedTransport(clock=clock)
        d = Dispatcher(memory_store, transport, poll_interval_s=0.01, clock=clock)
        d.start()
        try:
            await wait_until(lambda: transport.calls)
        finally:
            await d.stop()
        assert (await memory_store.get(record.id)).status == S.SENT

    @pytest.mark.asyncio
    async def test_queued_batch_never_delivered_twice(self, queue, memory_store, clock):
        # Batch larger than concurrency: ten records wait for a slot behind the first five
        records = await enqueue_many(queue, 15)
        slow = GatedTransport(clock=clock)
        fast = ScriptedTransport(clock=clock)
        limits = dict(batch_size=15, concurrency=5, delivery_timeout_s=2, stale_after_s=2.5)
        a = Dispatcher(memory_store, slow, worker_name="a", clock=clock, **limits)
        b = Dispatcher(memory_store, fast, worker_name="b", clock=clock, **limits)

        cycle = asyncio.create_task(a.run_cycle())
        await wait_until(lambda: len(slow.calls) == 5)

        clock.advance(1.5)
        slow.open(5)
        await wait_until(lambda: len(slow.calls) == 10)

        # Second round started (and refreshed its claims) at +1.5s; third round still waits
        clock.advance(1.2)
        assert await b.recover_stale() == 5
        b_stats = await b.run_cycle()
        assert b_stats["sent"] == 5

        slow.open(5)
        a_stats = await asyncio.wait_for(cycle, timeout=2)
        assert a_stats["claimed"] == 15
        assert a_stats["sent"] == 10
        assert a_stats["errors"] == 5

        delivered = slow.recipients + fast.recipients
        assert sorted(delivered) == sorted(r.recipient for r in records)
        stats = await queue.get_stats()
        assert stats.sent == 15
        assert stats.in_flight == 0


# ──────────────────────────────────────────────────────────────
#  Metrics
# ──────────────────────────────────────────────────────────────

class TestDispatcherMetrics:
    @pytest.mark.asyncio
    async def test_accumulates_across_cycles(self, queue, dispatcher, transport, clock):
        transport.by_recipient = {"bad@example.com": "rejected"}
        await queue.enqueue("good@example.com", "s", "b")
        await queue.enqueue("bad@example.com", "s", "b")

        await dispatcher.run_cycle()
        clock.advance(5)
        await dispatcher.run_cycle()

        data = dispatcher.metrics.to_dict()
        assert data["cycles"] == 2
        assert data["claimed"] == 3
        assert data["sent"] == 1
        assert data["retried"] == 2
        assert data["failed"] == 0
        assert data["recent_failures"] == ["rejected", "rejected"]
        assert data["last_cycle_at"] == clock.now.isoformat()

    def test_recent_failures_bounded(self):
        metrics = DispatcherMetrics(max_reasons=3)
        for i in range(5):
            metrics.record_failure_reason(f"r{i}")
        assert metrics.recent_failures == ["r2", "r3", "r4"]

    def test_average_latency(self):
        metrics = DispatcherMetrics()
        assert metrics.avg_latency_ms == 0.0
        metrics.record_latency(10)
        metrics.record_latency(30)
        assert metrics.avg_latency_ms == 20.0
