from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from lightsched.errors import InvalidExpressionError
from lightsched.trigger import Trigger

from conftest import FakeClock, settle


@pytest.mark.asyncio
async def test_trigger_fires_at_each_occurrence(clock: FakeClock):
    fired: list[datetime] = []

    async def on_fire(at: datetime) -> None:
        fired.append(at)

    trigger = Trigger.start("s1", "* * * * *", "UTC", on_fire, clock=clock)
    assert trigger.next_fire_at == datetime(2025, 6, 1, 12, 1, tzinfo=UTC)
    await settle()

    await clock.advance(timedelta(minutes=1))
    await clock.advance(timedelta(minutes=1))

    assert fired == [
        datetime(2025, 6, 1, 12, 1, tzinfo=UTC),
        datetime(2025, 6, 1, 12, 2, tzinfo=UTC),
    ]
    assert trigger.next_fire_at == datetime(2025, 6, 1, 12, 3, tzinfo=UTC)
    await trigger.cancel()


@pytest.mark.asyncio
async def test_cancel_prevents_future_fires(clock: FakeClock):
    fired: list[datetime] = []

    async def on_fire(at: datetime) -> None:
        fired.append(at)

    trigger = Trigger.start("s1", "* * * * *", "UTC", on_fire, clock=clock)
    await settle()
    await trigger.cancel()

    assert trigger.cancelled
    assert not trigger.running
    assert trigger.next_fire_at is None

    await clock.advance(timedelta(minutes=5))
    assert fired == []


@pytest.mark.asyncio
async def test_missed_occurrences_collapse_into_one_fire(clock: FakeClock):
    fired: list[datetime] = []

    async def on_fire(at: datetime) -> None:
        fired.append(at)

    trigger = Trigger.start("s1", "* * * * *", "UTC", on_fire, clock=clock)
    await settle()
    await clock.advance(timedelta(minutes=10))

    assert len(fired) == 1
    assert trigger.next_fire_at == datetime(2025, 6, 1, 12, 11, tzinfo=UTC)
    await trigger.cancel()


@pytest.mark.asyncio
async def test_overlapping_fires_run_concurrently(clock: FakeClock):
    release = asyncio.Event()
    started: list[datetime] = []

    async def on_fire(at: datetime) -> None:
        started.append(at)
        await release.wait()

    trigger = Trigger.start("s1", "* * * * *", "UTC", on_fire, clock=clock)
    await settle()
    await clock.advance(timedelta(minutes=1))
    await clock.advance(timedelta(minutes=1))

    assert len(started) == 2
    assert trigger.in_flight == 2

    release.set()
    await trigger.drain()
    assert trigger.in_flight == 0
    await trigger.cancel()


@pytest.mark.asyncio
async def test_in_flight_fire_completes_after_cancel(clock: FakeClock):
    release = asyncio.Event()
    completed: list[datetime] = []

    async def on_fire(at: datetime) -> None:
        await release.wait()
        completed.append(at)

    trigger = Trigger.start("s1", "* * * * *", "UTC", on_fire, clock=clock)
    await settle()
    await clock.advance(timedelta(minutes=1))
    await trigger.cancel()
    assert trigger.in_flight == 1

    release.set()
    await trigger.drain()
    assert completed == [datetime(2025, 6, 1, 12, 1, tzinfo=UTC)]


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_trigger(clock: FakeClock):
    calls = 0

    async def on_fire(at: datetime) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    trigger = Trigger.start("s1", "* * * * *", "UTC", on_fire, clock=clock)
    await settle()
    await clock.advance(timedelta(minutes=1))
    await clock.advance(timedelta(minutes=1))

    assert calls == 2
    assert trigger.running
    await trigger.cancel()


@pytest.mark.asyncio
async def test_start_rejects_invalid_expression(clock: FakeClock):
    async def on_fire(at: datetime) -> None:
        return None

    with pytest.raises(InvalidExpressionError):
        Trigger.start("s1", "61 * * * *", "UTC", on_fire, clock=clock)
