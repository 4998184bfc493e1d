"""Cancellable, self-rescheduling cron triggers."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

from .cron import next_fire_at
from .errors import ValidationError
from .utils import logger

OnFire = Callable[[datetime], Awaitable[None]]


class Clock(Protocol):
    """Source of the current time and of timed waits."""

    def now(self) -> datetime:
        ...

    async def wait_until(self, instant: datetime, cancelled: asyncio.Event) -> bool:
        """Wait until ``instant``; return True if ``cancelled`` was set first."""
        ...


class SystemClock:
    """Wall-clock implementation backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def wait_until(self, instant: datetime, cancelled: asyncio.Event) -> bool:
        # Long sleeps can return early, so re-check the remaining time on wake-up.
        while not cancelled.is_set():
            remaining = (instant - self.now()).total_seconds()
            if remaining <= 0:
                return False
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(cancelled.wait(), timeout=remaining)
        return True


class Trigger:
    """A running timer bound to one schedule id.

    Each iteration computes the next fire instant, waits for it (or for
    cancellation) and starts ``on_fire`` as its own task.  A fire that is still
    running when the next instant elapses does not delay or suppress the next
    fire; both run concurrently.

    Example:
        trigger = Trigger.start("sched-1", "0 7 * * *", "America/New_York", on_fire)
        ...
        await trigger.cancel()
    """

    def __init__(
        self,
        schedule_id: str,
        cron_expression: str,
        timezone: str,
        on_fire: OnFire,
        *,
        clock: Clock,
    ) -> None:
        self.schedule_id = schedule_id
        self.cron_expression = cron_expression
        self.timezone = timezone
        self.next_fire_at: datetime | None = None
        self._on_fire = on_fire
        self._clock = clock
        self._cancelled = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._fires: set[asyncio.Task[None]] = set()

    @classmethod
    def start(
        cls,
        schedule_id: str,
        cron_expression: str,
        timezone: str,
        on_fire: OnFire,
        *,
        clock: Clock | None = None,
    ) -> Trigger:
        """Validate the expression and start the wait/fire loop.

        Raises:
            ValidationError: If the expression or timezone is malformed.
        """
        clock = clock or SystemClock()
        trigger = cls(schedule_id, cron_expression, timezone, on_fire, clock=clock)
        trigger.next_fire_at = next_fire_at(cron_expression, timezone, clock.now())
        trigger._task = asyncio.create_task(
            trigger._run(), name=f"trigger:{schedule_id}"
        )
        logger.bind(
            schedule_id=schedule_id,
            cron=cron_expression,
            timezone=timezone,
            next_fire_at=trigger.next_fire_at.isoformat(),
        ).debug("Trigger started")
        return trigger

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> int:
        return len(self._fires)

    async def cancel(self) -> None:
        """Stop future fires and wait for the loop to acknowledge.

        Fires already in progress are left to run to completion.
        """
        self._cancelled.set()
        if self._task is not None and not self._task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self.next_fire_at = None
        logger.bind(schedule_id=self.schedule_id).debug("Trigger cancelled")

    async def drain(self) -> None:
        """Wait for every in-flight fire to finish."""
        while self._fires:
            await asyncio.gather(*list(self._fires), return_exceptions=True)

    async def _run(self) -> None:
        last_fired: datetime | None = None
        while not self._cancelled.is_set():
            reference = self._clock.now()
            if last_fired is not None and reference < last_fired:
                reference = last_fired
            try:
                fire_at = next_fire_at(self.cron_expression, self.timezone, reference)
            except ValidationError as exc:
                logger.bind(schedule_id=self.schedule_id, field=exc.field).error(
                    "Trigger stopped: {}", exc
                )
                break
            self.next_fire_at = fire_at

            if await self._clock.wait_until(fire_at, self._cancelled):
                break
            if self._cancelled.is_set():
                break

            self._spawn_fire(fire_at)
            last_fired = fire_at

    def _spawn_fire(self, fire_at: datetime) -> None:
        task = asyncio.create_task(
            self._fire(fire_at), name=f"fire:{self.schedule_id}:{fire_at.isoformat()}"
        )
        self._fires.add(task)
        task.add_done_callback(self._fires.discard)

    async def _fire(self, fire_at: datetime) -> None:
        logger.bind(schedule_id=self.schedule_id, fire_at=fire_at.isoformat()).info(
            "Trigger fired"
        )
        try:
            await self._on_fire(fire_at)
        except Exception:
            logger.bind(schedule_id=self.schedule_id).exception("Trigger callback failed")


__all__ = ["Clock", "OnFire", "SystemClock", "Trigger"]
