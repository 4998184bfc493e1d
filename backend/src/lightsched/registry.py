"""In-memory registry of live schedule triggers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

from .cron import next_fire_at
from .dispatcher import ActionDispatcher, build_device_update
from .errors import ValidationError
from .schemas import FireResult, ScheduleDefinition, TriggerStatus
from .trigger import Clock, SystemClock, Trigger
from .utils import logger

StoreMutation = Callable[[], Awaitable[ScheduleDefinition | None]]


@dataclass
class ActiveTrigger:
    """Live trigger state for one schedule; owned exclusively by the registry."""

    definition: ScheduleDefinition
    trigger: Trigger
    last_fire_result: FireResult | None = None


@dataclass(frozen=True)
class TriggerSnapshot:
    """Read-only view of an ActiveTrigger."""

    schedule_id: str
    name: str
    cron_expression: str
    timezone: str
    version: int
    next_fire_at: datetime | None
    in_flight: int
    last_fire_result: FireResult | None

    def to_schema(self) -> TriggerStatus:
        return TriggerStatus(
            schedule_id=self.schedule_id,
            name=self.name,
            cron_expression=self.cron_expression,
            timezone=self.timezone,
            version=self.version,
            next_fire_at=self.next_fire_at,
            in_flight=self.in_flight,
            last_fire_result=self.last_fire_result,
        )


@dataclass
class _IdLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def validate_definition(definition: ScheduleDefinition, *, now: datetime) -> None:
    """Check the cron expression, timezone and action of a definition.

    Raises:
        ValidationError: naming the offending field.
    """
    next_fire_at(definition.cron_expression, definition.timezone, now)
    build_device_update(definition.action)


class ScheduleRegistry:
    """Authoritative map from schedule id to at most one live trigger.

    Mutations for the same id are serialised with a per-id lock; mutations
    for different ids run independently.

    Example:
        registry = ScheduleRegistry(dispatcher)
        await registry.upsert(definition)
        registry.get(definition.id)
        await registry.remove(definition.id)
    """

    def __init__(self, dispatcher: ActionDispatcher, *, clock: Clock | None = None) -> None:
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._triggers: dict[str, ActiveTrigger] = {}
        self._applied: dict[str, ScheduleDefinition] = {}
        self._locks: dict[str, _IdLock] = {}

    # Reads ------------------------------------------------------------------

    def get(self, schedule_id: str) -> TriggerSnapshot | None:
        active = self._triggers.get(schedule_id)
        return self._snapshot(active) if active else None

    def list(self) -> list[TriggerSnapshot]:
        return [self._snapshot(active) for active in list(self._triggers.values())]

    def applied_definition(self, schedule_id: str) -> ScheduleDefinition | None:
        """The last definition applied for ``schedule_id``, whether or not it is live."""
        return self._applied.get(schedule_id)

    def is_live(self, schedule_id: str) -> bool:
        active = self._triggers.get(schedule_id)
        return active is not None and active.trigger.running

    def known_ids(self) -> set[str]:
        return set(self._applied) | set(self._triggers)

    def __len__(self) -> int:
        return len(self._triggers)

    # Mutations --------------------------------------------------------------

    async def upsert(self, definition: ScheduleDefinition) -> bool:
        """Install, replace or retire the trigger for ``definition``.

        Returns False when the definition is older than the one already applied.

        Raises:
            ValidationError: Before any state changes, if the definition is malformed.
        """
        validate_definition(definition, now=self._clock.now())
        async with self._serialized(definition.id):
            return await self._install(definition)

    async def remove(self, schedule_id: str) -> bool:
        """Cancel and forget the trigger for ``schedule_id``; a no-op when absent."""
        async with self._serialized(schedule_id):
            return await self._retire(schedule_id)

    async def apply(
        self, schedule_id: str, mutation: StoreMutation
    ) -> ScheduleDefinition | None:
        """Run a store mutation and apply its result under the id's lock.

        ``mutation`` returns the definition now persisted for ``schedule_id``
        or None when it no longer exists.  Holding the lock across both steps
        keeps a concurrent update and delete of the same id from resurrecting
        a deleted schedule.  The persisted definition is applied even when its
        version is lower than the one last applied.

        Raises:
            ValidationError: If the persisted definition is malformed; any
                trigger for the id is retired first.
        """
        async with self._serialized(schedule_id):
            definition = await mutation()
            if definition is None:
                await self._retire(schedule_id)
                return None
            try:
                validate_definition(definition, now=self._clock.now())
            except ValidationError:
                await self._retire(schedule_id)
                raise
            await self._install(definition, authoritative=True)
            return definition

    async def shutdown(self) -> None:
        """Cancel every trigger; in-flight fires are allowed to finish."""
        for schedule_id in list(self._triggers):
            await self.remove(schedule_id)
        logger.info("Schedule registry stopped")

    async def drain(self) -> None:
        """Wait for in-flight fires of every live trigger."""
        for active in list(self._triggers.values()):
            await active.trigger.drain()

    # Internals --------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, schedule_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(schedule_id)
        if entry is None:
            entry = self._locks[schedule_id] = _IdLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[schedule_id]

    async def _install(
        self, definition: ScheduleDefinition, *, authoritative: bool = False
    ) -> bool:
        """Apply ``definition``; unless ``authoritative``, older versions are ignored."""
        schedule_id = definition.id
        log = logger.bind(schedule_id=schedule_id, version=definition.version)

        applied = self._applied.get(schedule_id)
        if (
            not authoritative
            and applied is not None
            and definition.version < applied.version
        ):
            log.bind(applied_version=applied.version).debug("Ignoring stale schedule definition")
            return False

        existing = self._triggers.get(schedule_id)
        if (
            existing is not None
            and existing.definition == definition
            and existing.trigger.running
        ):
            return True

        previous_result = None
        if existing is not None:
            await existing.trigger.cancel()
            previous_result = existing.last_fire_result

        self._applied[schedule_id] = definition
        if not definition.is_active:
            if self._triggers.pop(schedule_id, None) is not None:
                log.info("Schedule deactivated; trigger retired")
            return True

        trigger = Trigger.start(
            schedule_id,
            definition.cron_expression,
            definition.timezone,
            self._on_fire_callback(definition),
            clock=self._clock,
        )
        # Single assignment so readers never observe a gap during replacement.
        self._triggers[schedule_id] = ActiveTrigger(
            definition=definition,
            trigger=trigger,
            last_fire_result=previous_result,
        )
        log.bind(
            cron=definition.cron_expression,
            timezone=definition.timezone,
            next_fire_at=trigger.next_fire_at.isoformat() if trigger.next_fire_at else None,
        ).info("Schedule trigger replaced" if existing else "Schedule trigger installed")
        return True

    async def _retire(self, schedule_id: str) -> bool:
        self._applied.pop(schedule_id, None)
        existing = self._triggers.get(schedule_id)
        if existing is None:
            return False
        await existing.trigger.cancel()
        self._triggers.pop(schedule_id, None)
        logger.bind(schedule_id=schedule_id).info("Schedule trigger removed")
        return True

    def _on_fire_callback(self, definition: ScheduleDefinition):
        async def on_fire(fired_at: datetime) -> None:
            result = await self._dispatcher.dispatch(
                definition.id, definition.action, fired_at=fired_at
            )
            active = self._triggers.get(definition.id)
            # A replacement trigger keeps only results from its own version.
            if active is not None and active.definition.version == definition.version:
                active.last_fire_result = result

        return on_fire

    @staticmethod
    def _snapshot(active: ActiveTrigger) -> TriggerSnapshot:
        definition = active.definition
        return TriggerSnapshot(
            schedule_id=definition.id,
            name=definition.name,
            cron_expression=definition.cron_expression,
            timezone=definition.timezone,
            version=definition.version,
            next_fire_at=active.trigger.next_fire_at,
            in_flight=active.trigger.in_flight,
            last_fire_result=active.last_fire_result,
        )


__all__ = [
    "ActiveTrigger",
    "ScheduleRegistry",
    "TriggerSnapshot",
    "validate_definition",
]
