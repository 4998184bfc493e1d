from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

import pytest

# Ensure we operate against the in-memory store during tests.
os.environ["LIGHTSCHED_DB_MODE"] = "memory"
os.environ["LIGHTSCHED_DB_URL"] = ""

from lightsched.schemas import (  # noqa: E402
    FireResult,
    ScheduleAction,
    ScheduleDefinition,
    TurnOnAction,
)
from lightsched.utils import configure_logging, logger  # noqa: E402

START = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock; waiters wake only when ``advance`` passes their instant."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._waiters: list[tuple[datetime, asyncio.Future[None]]] = []

    def now(self) -> datetime:
        return self._now

    async def wait_until(self, instant: datetime, cancelled: asyncio.Event) -> bool:
        if cancelled.is_set():
            return True
        if instant <= self._now:
            return False

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (instant, future)
        self._waiters.append(entry)
        cancel_wait = asyncio.ensure_future(cancelled.wait())
        try:
            await asyncio.wait({future, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if entry in self._waiters:
                self._waiters.remove(entry)
        return cancelled.is_set()

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def advance(self, delta: timedelta) -> None:
        self._now += delta
        for instant, future in list(self._waiters):
            if instant <= self._now and not future.done():
                future.set_result(None)
        await settle()

    async def advance_to(self, instant: datetime) -> None:
        await self.advance(instant - self._now)


async def settle(rounds: int = 25) -> None:
    """Let ready tasks run until the loop is quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class RecordingDispatcher:
    """Records every dispatch; optionally blocks until released."""

    def __init__(self, *, status: str = "success") -> None:
        self.calls: list[tuple[str, ScheduleAction, datetime]] = []
        self.status = status
        self.gate: asyncio.Event | None = None

    async def dispatch(
        self, schedule_id: str, action: ScheduleAction, *, fired_at: datetime
    ) -> FireResult:
        self.calls.append((schedule_id, action, fired_at))
        if self.gate is not None:
            await self.gate.wait()
        return FireResult(status=self.status, fired_at=fired_at)  # type: ignore[arg-type]


def make_definition(
    schedule_id: str = "schedule-1",
    *,
    cron_expression: str = "0 7 * * *",
    timezone: str = "UTC",
    action: ScheduleAction | None = None,
    is_active: bool = True,
    version: int = 1,
    name: str = "Morning lights",
) -> ScheduleDefinition:
    return ScheduleDefinition(
        id=schedule_id,
        name=name,
        cron_expression=cron_expression,
        timezone=timezone,
        action=action or TurnOnAction(target_device_id="lamp-1"),
        is_active=is_active,
        version=version,
        created_at=START,
        updated_at=START,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def log_messages():
    """Collect formatted Loguru records emitted during the test."""
    configure_logging()
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(sink_id)
