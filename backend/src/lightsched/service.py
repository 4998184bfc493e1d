"""Schedule mutations that keep the store and the registry in step."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from .errors import NotFoundError, StoreUnavailableError
from .registry import ScheduleRegistry, validate_definition
from .schemas import (
    ScheduleCreateRequest,
    ScheduleDefinition,
    ScheduleUpdateRequest,
)
from .store import ScheduleStore
from .trigger import Clock, SystemClock
from .utils import logger


class ScheduleService:
    """Entry point used by the HTTP layer.

    Every store write runs under the registry's lock for that schedule id and
    the registry is updated before the call returns, so a client re-reading
    right after a create or update sees behaviour matching the new definition.
    Nothing reaches the registry unless the store write succeeded.
    """

    def __init__(
        self,
        store: ScheduleStore,
        registry: ScheduleRegistry,
        *,
        default_timezone: str = "UTC",
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.default_timezone = default_timezone
        self._clock = clock or SystemClock()

    async def create(self, payload: ScheduleCreateRequest) -> ScheduleDefinition:
        now = self._clock.now()
        definition = ScheduleDefinition(
            id=str(uuid.uuid4()),
            name=payload.name.strip(),
            cron_expression=payload.cron_expression.strip(),
            timezone=payload.timezone or self.default_timezone,
            action=payload.action,
            is_active=payload.is_active,
            version=1,
            created_at=now,
            updated_at=now,
        )
        validate_definition(definition, now=now)

        async def insert() -> ScheduleDefinition | None:
            return await asyncio.to_thread(self.store.insert, definition)

        created = await self.registry.apply(definition.id, insert)
        assert created is not None
        logger.bind(schedule_id=created.id, name=created.name).info("Schedule created")
        return created

    async def list(self) -> list[ScheduleDefinition]:
        return await asyncio.to_thread(self.store.list_all)

    async def get(self, schedule_id: str) -> ScheduleDefinition:
        definition = await asyncio.to_thread(self.store.get, schedule_id)
        if definition is None:
            raise NotFoundError(schedule_id)
        return definition

    async def update(
        self,
        schedule_id: str,
        payload: ScheduleUpdateRequest | ScheduleCreateRequest,
    ) -> ScheduleDefinition:
        """Apply a partial (PATCH) or full (PUT) update.

        Raises:
            NotFoundError: If the schedule does not exist.
            ValidationError: If the merged definition is malformed; nothing is persisted.
            StoreUnavailableError: If the store cannot be reached; the registry is untouched.
        """
        changes = self._changes_from(payload)

        def write() -> ScheduleDefinition | None:
            existing = self.store.get(schedule_id)
            if existing is None:
                return None
            candidate = existing.model_copy(update=changes)
            validate_definition(candidate, now=self._clock.now())
            return self.store.update(schedule_id, changes)

        async def mutation() -> ScheduleDefinition | None:
            return await asyncio.to_thread(write)

        updated = await self.registry.apply(schedule_id, mutation)
        if updated is None:
            raise NotFoundError(schedule_id)
        logger.bind(schedule_id=schedule_id, version=updated.version).info("Schedule updated")
        return updated

    async def delete(self, schedule_id: str) -> None:
        """Delete a schedule and retire its trigger.

        Raises:
            NotFoundError: If the schedule does not exist (including a repeated delete).
        """
        deleted = False

        async def mutation() -> ScheduleDefinition | None:
            nonlocal deleted
            deleted = await asyncio.to_thread(self.store.delete, schedule_id)
            return None

        await self.registry.apply(schedule_id, mutation)
        if not deleted:
            raise NotFoundError(schedule_id)
        logger.bind(schedule_id=schedule_id).info("Schedule deleted")

    async def count_persisted(self) -> int | None:
        """Number of stored schedules, or None when the store is unreachable."""
        try:
            return len(await asyncio.to_thread(self.store.list_all))
        except StoreUnavailableError:
            return None

    def _changes_from(
        self, payload: ScheduleUpdateRequest | ScheduleCreateRequest
    ) -> dict[str, Any]:
        if isinstance(payload, ScheduleCreateRequest):
            return {
                "name": payload.name.strip(),
                "cron_expression": payload.cron_expression.strip(),
                "timezone": payload.timezone or self.default_timezone,
                "action": payload.action,
                "is_active": payload.is_active,
            }

        changes: dict[str, Any] = {}
        for name in payload.model_fields_set:
            value = getattr(payload, name)
            if value is None:
                continue
            if isinstance(value, str):
                value = value.strip()
            changes[name] = value
        return changes


__all__ = ["ScheduleService"]
