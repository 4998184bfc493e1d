from __future__ import annotations

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from lightsched.database import build_engine
from lightsched.db_models import ScheduleModel
from lightsched.schemas import SetBrightnessAction
from lightsched.store import InMemoryScheduleStore, SqlScheduleStore

from conftest import make_definition


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryScheduleStore()
    engine = build_engine(f"sqlite:///{tmp_path / 'schedules.db'}")
    factory = sessionmaker(bind=engine, autoflush=False, future=True)
    return SqlScheduleStore(factory)


def test_insert_get_and_list(store):
    definition = make_definition()
    store.insert(definition)

    assert store.get(definition.id) == definition
    assert store.list_all() == [definition]
    assert store.get("missing") is None


def test_update_bumps_version_and_keeps_identity(store):
    definition = make_definition()
    store.insert(definition)

    updated = store.update(
        definition.id,
        {
            "cron_expression": "30 6 * * *",
            "action": SetBrightnessAction(target_device_id="lamp-1", value=10),
        },
    )

    assert updated is not None
    assert updated.id == definition.id
    assert updated.version == 2
    assert updated.cron_expression == "30 6 * * *"
    assert updated.action == SetBrightnessAction(target_device_id="lamp-1", value=10)
    assert updated.created_at == definition.created_at
    assert updated.updated_at > definition.updated_at
    assert store.get(definition.id) == updated


def test_update_missing_returns_none(store):
    assert store.update("missing", {"name": "x"}) is None


def test_update_rejects_managed_fields(store):
    store.insert(make_definition())
    with pytest.raises(KeyError):
        store.update("schedule-1", {"version": 10})


def test_delete_reports_existence(store):
    store.insert(make_definition())

    assert store.delete("schedule-1") is True
    assert store.delete("schedule-1") is False
    assert store.list_all() == []


def test_in_memory_store_returns_copies():
    store = InMemoryScheduleStore()
    definition = make_definition()
    store.insert(definition)

    fetched = store.get(definition.id)
    assert fetched is not None
    fetched.name = "Changed"

    assert store.get(definition.id).name == definition.name


def test_sql_store_skips_undecodable_rows(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'schedules.db'}")
    factory = sessionmaker(bind=engine, autoflush=False, future=True)
    store = SqlScheduleStore(factory)
    store.insert(make_definition("good"))
    store.insert(make_definition("broken"))

    with factory() as session:
        session.execute(
            update(ScheduleModel)
            .where(ScheduleModel.id == "broken")
            .values(action_json='{"command": "explode"}')
        )
        session.commit()

    assert [definition.id for definition in store.list_all()] == ["good"]
