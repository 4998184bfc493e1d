"""Startup and periodic reconciliation of the registry against the store."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field

from pydantic import ValidationError as ModelValidationError

from .errors import StoreUnavailableError, ValidationError
from .registry import ScheduleRegistry
from .schemas import ReconcileReportResponse, ScheduleDefinition
from .store import ScheduleStore
from .utils import logger


@dataclass
class ReconcileReport:
    applied: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_schema(self) -> ReconcileReportResponse:
        return ReconcileReportResponse(
            applied=list(self.applied),
            removed=list(self.removed),
            skipped=list(self.skipped),
        )


@dataclass
class Reconciler:
    """Brings the registry in line with whatever the store currently holds.

    At startup every persisted definition is installed.  Afterwards the loop
    only touches ids whose stored record differs from what the registry last
    applied, re-reading each one under the registry's lock so a sweep that
    started before a delete cannot bring the schedule back.
    """

    store: ScheduleStore
    registry: ScheduleRegistry
    interval_seconds: float = 60.0
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _running: bool = field(default=False, init=False)

    async def reconcile_once(self, *, startup: bool = False) -> ReconcileReport:
        """Run one reconciliation pass.

        Invalid records are logged and skipped; the remaining records are
        still applied.

        Raises:
            StoreUnavailableError: If the store cannot be listed.
        """
        definitions = await asyncio.to_thread(self.store.list_all)
        report = ReconcileReport()
        stored_ids = {definition.id for definition in definitions}

        for definition in definitions:
            if not startup and not self._drifted(definition):
                continue
            try:
                if startup:
                    await self.registry.upsert(definition)
                else:
                    await self.registry.apply(definition.id, self._refetch(definition.id))
            except ValidationError as exc:
                logger.bind(
                    schedule_id=definition.id,
                    field=exc.field,
                    error=str(exc),
                ).warning("Skipping invalid schedule during reconciliation")
                report.skipped.append(definition.id)
                continue
            report.applied.append(definition.id)

        for schedule_id in sorted(self.registry.known_ids() - stored_ids):
            try:
                await self.registry.apply(schedule_id, self._refetch(schedule_id))
            except ValidationError:
                report.skipped.append(schedule_id)
                continue
            if self.registry.applied_definition(schedule_id) is None:
                report.removed.append(schedule_id)

        logger.bind(
            startup=startup,
            applied=len(report.applied),
            removed=len(report.removed),
            skipped=len(report.skipped),
        ).info("Reconciliation finished")
        return report

    async def start(self) -> None:
        if self._task:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.bind(interval_seconds=self.interval_seconds).info("Reconciler started.")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Reconciler stopped.")

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.reconcile_once()
            except StoreUnavailableError as exc:
                logger.bind(error=str(exc)).warning("Reconciliation skipped; store unavailable")
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.bind(error=str(exc)).exception("Reconciliation iteration failed.")

    def _drifted(self, definition: ScheduleDefinition) -> bool:
        if self.registry.applied_definition(definition.id) != definition:
            return True
        if definition.is_active:
            return not self.registry.is_live(definition.id)
        return self.registry.get(definition.id) is not None

    def _refetch(self, schedule_id: str):
        async def mutation() -> ScheduleDefinition | None:
            try:
                return await asyncio.to_thread(self.store.get, schedule_id)
            except (ModelValidationError, ValueError) as exc:
                logger.bind(schedule_id=schedule_id, error=str(exc)).warning(
                    "Stored schedule cannot be decoded; retiring its trigger"
                )
                return None

        return mutation


__all__ = ["ReconcileReport", "Reconciler"]
