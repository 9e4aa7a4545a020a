"""Shared test fixtures for the notification queue."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from database.store_memory import InMemoryRecordStore
from job_queue.dispatcher import Dispatcher
from job_queue.retry import RetryPolicy
from job_queue.service import NotificationQueue
from models.schemas import DeliveryResult
from transport.base import Transport


class FakeClock:
    """Deterministic clock; time only moves when a test advances it."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


HANG = object()


class ScriptedTransport(Transport):
    """
    Transport test double driven by a script of outcomes, one per call.

    Script entries:
      True              → success
      "reason"          → failure with that reason
      Exception(...)    → raised from deliver()
      HANG              → never returns (exercises the delivery timeout)
    Once the script is used up every call returns ``default``. Outcomes in
    ``by_recipient`` take precedence and are never used up. ``delay`` adds a
    real sleep before each outcome.
    """

    name = "scripted"

    def __init__(
        self,
        script: list[Any] = None,
        default: Any = True,
        clock: FakeClock = None,
        by_recipient: dict[str, Any] = None,
        delay: float = 0.0,
    ):
        super().__init__()
        self.by_recipient = dict(by_recipient or {})
        self.delay = delay
        self.script = list(script or [])
        self.default = default
        self.clock = clock
        self.calls: list[dict[str, Any]] = []

    async def deliver(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        self.calls.append({
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "at": self.clock() if self.clock else None,
        })
        if recipient in self.by_recipient:
            outcome = self.by_recipient[recipient]
        else:
            outcome = self.script.pop(0) if self.script else self.default
        if self.delay:
            await asyncio.sleep(self.delay)
        if outcome is HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is True:
            return DeliveryResult.success(f"msg-{len(self.calls)}")
        return DeliveryResult.failure(str(outcome))

    @property
    def recipients(self) -> list[str]:
        return [c["recipient"] for c in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_s=1.0, max_delay_s=60.0)


@pytest.fixture
def transport(clock) -> ScriptedTransport:
    return ScriptedTransport(clock=clock)


@pytest.fixture
def queue(memory_store, policy, clock) -> NotificationQueue:
    return NotificationQueue(memory_store, policy=policy, clock=clock)


@pytest.fixture
def dispatcher(memory_store, transport, policy, clock) -> Dispatcher:
    return Dispatcher(
        memory_store, transport,
        policy=policy,
        poll_interval_s=0.01,
        batch_size=10,
        delivery_timeout_s=1.0,
        stale_after_s=60.0,
        worker_name="test-worker",
        clock=clock,
    )
