"""Durable schedule store: in-memory and SQLAlchemy-backed implementations."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any, Protocol

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as ModelValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import get_engine, get_session_factory, is_database_configured
from .db_models import ScheduleModel
from .errors import StoreUnavailableError
from .schemas import ScheduleAction, ScheduleDefinition
from .utils import logger

_ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(ScheduleAction)

# Fields a caller may change through ``update``; id, version and timestamps are managed here.
MUTABLE_FIELDS = frozenset({"name", "cron_expression", "timezone", "action", "is_active"})


def _now() -> datetime:
    return datetime.now(UTC)


def _merge(definition: ScheduleDefinition, changes: Mapping[str, Any]) -> ScheduleDefinition:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise KeyError(f"Fields cannot be updated: {sorted(unknown)}")
    data = definition.model_dump()
    for name, value in changes.items():
        data[name] = value.model_dump() if isinstance(value, BaseModel) else value
    data["version"] = definition.version + 1
    data["updated_at"] = _now()
    return ScheduleDefinition.model_validate(data)


class ScheduleStore(Protocol):
    """CRUD port for persisted schedule definitions."""

    def insert(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        ...

    def list_all(self) -> list[ScheduleDefinition]:
        ...

    def get(self, schedule_id: str) -> ScheduleDefinition | None:
        ...

    def update(
        self, schedule_id: str, changes: Mapping[str, Any]
    ) -> ScheduleDefinition | None:
        ...

    def delete(self, schedule_id: str) -> bool:
        ...


class InMemoryScheduleStore(ScheduleStore):
    """Process-local store used when no database is configured."""

    def __init__(self) -> None:
        self._records: dict[str, ScheduleDefinition] = {}
        self._lock = Lock()

    @staticmethod
    def _copy(definition: ScheduleDefinition) -> ScheduleDefinition:
        return definition.model_copy(deep=True)

    def insert(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        with self._lock:
            if definition.id in self._records:
                raise KeyError(f"Schedule {definition.id} already exists.")
            self._records[definition.id] = self._copy(definition)
            return self._copy(definition)

    def list_all(self) -> list[ScheduleDefinition]:
        with self._lock:
            return [self._copy(definition) for definition in self._records.values()]

    def get(self, schedule_id: str) -> ScheduleDefinition | None:
        with self._lock:
            definition = self._records.get(schedule_id)
            return self._copy(definition) if definition else None

    def update(
        self, schedule_id: str, changes: Mapping[str, Any]
    ) -> ScheduleDefinition | None:
        with self._lock:
            existing = self._records.get(schedule_id)
            if existing is None:
                return None
            updated = _merge(existing, changes)
            self._records[schedule_id] = updated
            return self._copy(updated)

    def delete(self, schedule_id: str) -> bool:
        with self._lock:
            return self._records.pop(schedule_id, None) is not None


def _definition_to_model(definition: ScheduleDefinition) -> ScheduleModel:
    return ScheduleModel(
        id=definition.id,
        name=definition.name,
        cron_expression=definition.cron_expression,
        timezone=definition.timezone,
        action_json=json.dumps(definition.action.model_dump(mode="json", by_alias=True)),
        is_active=definition.is_active,
        version=definition.version,
        created_at=definition.created_at.isoformat(),
        updated_at=definition.updated_at.isoformat(),
    )


def _model_to_definition(model: ScheduleModel) -> ScheduleDefinition:
    return ScheduleDefinition(
        id=model.id,
        name=model.name,
        cron_expression=model.cron_expression,
        timezone=model.timezone,
        action=_ACTION_ADAPTER.validate_python(json.loads(model.action_json)),
        is_active=model.is_active,
        version=model.version,
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=datetime.fromisoformat(model.updated_at),
    )


def _copy_into(model: ScheduleModel, definition: ScheduleDefinition) -> None:
    model.name = definition.name
    model.cron_expression = definition.cron_expression
    model.timezone = definition.timezone
    model.action_json = json.dumps(definition.action.model_dump(mode="json", by_alias=True))
    model.is_active = definition.is_active
    model.version = definition.version
    model.updated_at = definition.updated_at.isoformat()


class SqlScheduleStore(ScheduleStore):
    """SQLAlchemy-backed schedule store."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.bind(error=str(exc)).error("Schedule store request failed")
            raise StoreUnavailableError(f"Schedule store unavailable: {exc}") from exc

    def insert(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        with self._session() as session:
            session.add(_definition_to_model(definition))
            session.commit()
        return definition

    def list_all(self) -> list[ScheduleDefinition]:
        with self._session() as session:
            rows = session.execute(select(ScheduleModel)).scalars().all()
            definitions: list[ScheduleDefinition] = []
            for row in rows:
                try:
                    definitions.append(_model_to_definition(row))
                except (ModelValidationError, ValueError) as exc:
                    logger.bind(schedule_id=row.id, error=str(exc)).warning(
                        "Skipping schedule row that cannot be decoded"
                    )
            return definitions

    def get(self, schedule_id: str) -> ScheduleDefinition | None:
        with self._session() as session:
            row = session.get(ScheduleModel, schedule_id)
            return _model_to_definition(row) if row else None

    def update(
        self, schedule_id: str, changes: Mapping[str, Any]
    ) -> ScheduleDefinition | None:
        with self._session() as session:
            row = session.get(ScheduleModel, schedule_id)
            if row is None:
                return None
            updated = _merge(_model_to_definition(row), changes)
            _copy_into(row, updated)
            session.commit()
            return updated

    def delete(self, schedule_id: str) -> bool:
        with self._session() as session:
            row = session.get(ScheduleModel, schedule_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


# Store factory ---------------------------------------------------------------


@lru_cache
def _default_schedule_store() -> InMemoryScheduleStore:
    return InMemoryScheduleStore()


@lru_cache
def _sql_schedule_store() -> SqlScheduleStore:
    return SqlScheduleStore()


def get_schedule_store() -> ScheduleStore:
    """Return the configured schedule store."""
    if is_database_configured() and get_engine() is not None:
        return _sql_schedule_store()
    return _default_schedule_store()


__all__ = [
    "MUTABLE_FIELDS",
    "ScheduleStore",
    "InMemoryScheduleStore",
    "SqlScheduleStore",
    "get_schedule_store",
]
