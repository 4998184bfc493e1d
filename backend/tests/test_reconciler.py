from __future__ import annotations

import asyncio

import pytest

from lightsched.errors import StoreUnavailableError
from lightsched.reconciler import Reconciler
from lightsched.registry import ScheduleRegistry
from lightsched.store import InMemoryScheduleStore

from conftest import FakeClock, RecordingDispatcher, make_definition


class UnavailableStore(InMemoryScheduleStore):
    def list_all(self):
        raise StoreUnavailableError("Schedule store unavailable: connection refused")


@pytest.fixture
def store() -> InMemoryScheduleStore:
    return InMemoryScheduleStore()


@pytest.fixture
def registry(dispatcher: RecordingDispatcher, clock: FakeClock) -> ScheduleRegistry:
    return ScheduleRegistry(dispatcher, clock=clock)


@pytest.mark.asyncio
async def test_startup_skips_invalid_records(store, registry, log_messages):
    store.insert(make_definition("a"))
    store.insert(make_definition("b", cron_expression="*/15 * * * *"))
    store.insert(make_definition("bad", cron_expression="bad"))

    report = await Reconciler(store, registry).reconcile_once(startup=True)

    assert sorted(report.applied) == ["a", "b"]
    assert report.skipped == ["bad"]
    assert len(registry) == 2
    assert any(
        "Skipping invalid schedule during reconciliation" in message
        for message in log_messages
    )
    await registry.shutdown()


@pytest.mark.asyncio
async def test_startup_with_unreachable_store_is_fatal(registry):
    with pytest.raises(StoreUnavailableError):
        await Reconciler(UnavailableStore(), registry).reconcile_once(startup=True)


@pytest.mark.asyncio
async def test_inactive_records_are_not_installed(store, registry):
    store.insert(make_definition("off", is_active=False))

    await Reconciler(store, registry).reconcile_once(startup=True)

    assert registry.get("off") is None
    assert registry.applied_definition("off") is not None


@pytest.mark.asyncio
async def test_out_of_band_edit_is_picked_up(store, registry):
    store.insert(make_definition(cron_expression="0 7 * * *"))
    reconciler = Reconciler(store, registry)
    await reconciler.reconcile_once(startup=True)

    store.update("schedule-1", {"cron_expression": "0 9 * * *"})
    report = await reconciler.reconcile_once()

    assert report.applied == ["schedule-1"]
    snapshot = registry.get("schedule-1")
    assert snapshot is not None
    assert snapshot.cron_expression == "0 9 * * *"
    assert snapshot.version == 2
    await registry.shutdown()


@pytest.mark.asyncio
async def test_unchanged_records_are_left_alone(store, registry):
    store.insert(make_definition())
    reconciler = Reconciler(store, registry)
    await reconciler.reconcile_once(startup=True)

    report = await reconciler.reconcile_once()

    assert report.applied == []
    assert report.removed == []
    await registry.shutdown()


@pytest.mark.asyncio
async def test_out_of_band_delete_retires_trigger(store, registry):
    store.insert(make_definition())
    reconciler = Reconciler(store, registry)
    await reconciler.reconcile_once(startup=True)

    store.delete("schedule-1")
    report = await reconciler.reconcile_once()

    assert report.removed == ["schedule-1"]
    assert registry.get("schedule-1") is None


@pytest.mark.asyncio
async def test_record_deleted_during_sweep_is_not_resurrected(store, registry):
    store.insert(make_definition())
    reconciler = Reconciler(store, registry)
    await reconciler.reconcile_once(startup=True)
    store.update("schedule-1", {"name": "Renamed"})

    original_get = store.get

    def get_after_delete(schedule_id):
        # A delete lands between the sweep's listing and its re-read.
        store.delete(schedule_id)
        return original_get(schedule_id)

    store.get = get_after_delete  # type: ignore[method-assign]
    await reconciler.reconcile_once()

    assert registry.get("schedule-1") is None


@pytest.mark.asyncio
async def test_periodic_loop_survives_store_outage(registry, log_messages):
    reconciler = Reconciler(UnavailableStore(), registry, interval_seconds=0.01)
    await reconciler.start()
    await asyncio.sleep(0.05)
    await reconciler.stop()

    assert any(
        "Reconciliation skipped; store unavailable" in message for message in log_messages
    )
