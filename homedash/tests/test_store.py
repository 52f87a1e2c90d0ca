from datetime import datetime, timedelta, timezone

import pytest

from homedash.engine.reconciler import build_reconciler
from homedash.engine.store import DeviceNotFoundError
from homedash.models import DeviceCreate, DeviceFilters, LayoutEntry, MqttMessage


async def add(store, topic, device_type="temperature_sensor", **extra):
    return await store.add_device(DeviceCreate(type=device_type, topic=topic, **extra))


@pytest.mark.asyncio
async def test_add_device_applies_type_defaults(store, transport, repository):
    device_id = await add(store, "AABBCC/relay1", device_type="relay")

    device = store.devices[device_id]
    assert device.name == "Smart Relay"
    assert device.icon == "zap"
    assert device.controllable is True
    assert device.enabled is True
    assert device.is_online is False
    assert device.data == {}
    assert transport.subscribed == ["AABBCC/relay1"]
    assert repository.saves == 1
    assert store.last_save_ok


@pytest.mark.asyncio
async def test_add_device_stacks_layout_entries(store):
    first = await add(store, "a/1", name="One")
    second = await add(store, "a/2", name="Two")

    layout = {entry.i: entry for entry in store.layout}
    assert (layout[first].x, layout[first].y, layout[first].w, layout[first].h) == (0, 0, 4, 4)
    assert layout[second].y == 4
    assert layout[second].min_w == 2 and layout[second].max_h == 8


@pytest.mark.asyncio
async def test_add_device_while_disconnected_does_not_subscribe(store, transport):
    transport.is_connected = False
    await add(store, "a/1")
    assert transport.subscribed == []


@pytest.mark.asyncio
async def test_remove_device(store, transport, repository):
    device_id = await add(store, "a/1")

    removed = await store.remove_device(device_id)

    assert removed.id == device_id
    assert device_id not in store.devices
    assert store.layout == []
    assert transport.unsubscribed == ["a/1"]
    assert store.deleted_topics == frozenset()
    assert repository.saves == 2


@pytest.mark.asyncio
async def test_remove_missing_device_raises(store):
    with pytest.raises(DeviceNotFoundError):
        await store.remove_device("nope")


@pytest.mark.asyncio
async def test_remove_keeps_subscription_shared_with_other_device(store, transport):
    first = await add(store, "shared/topic", name="One")
    await add(store, "shared/topic", name="Two")

    await store.remove_device(first)

    assert transport.unsubscribed == []


@pytest.mark.asyncio
async def test_bulk_remove_records_deleted_topics(store, repository):
    first = await add(store, "a/1")
    second = await add(store, "a/2")
    keep = await add(store, "a/3")
    saves = repository.saves

    removed = await store.remove_devices([first, "missing", second])

    assert removed == [first, second]
    assert list(store.devices) == [keep]
    assert store.deleted_topics == {"a/1", "a/2"}
    assert repository.saves == saves + 1

    await add(store, "a/1")
    assert store.deleted_topics == {"a/2"}

    await store.clear_deleted_topics()
    assert store.deleted_topics == frozenset()


@pytest.mark.asyncio
async def test_update_device_merges_patch(store):
    device_id = await add(store, "a/1", name="Old")

    updated = await store.update_device(
        device_id,
        {"id": "hijack", "name": "New", "commandTopic": "a/set", "room": "Garage"},
    )

    assert updated.id == device_id
    assert updated.name == "New"
    assert updated.command_topic == "a/set"
    assert updated.room == "Garage"
    assert updated.icon == "thermometer"
    assert store.devices[device_id] == updated


@pytest.mark.asyncio
async def test_update_missing_device_raises(store):
    with pytest.raises(DeviceNotFoundError):
        await store.update_device("nope", {"name": "x"})


@pytest.mark.asyncio
async def test_toggle_enabled_retains_record(store, reconciler):
    device_id = await add(store, "a/1")
    store.apply_reading(device_id, {"Temp": 20}, datetime.now(timezone.utc))
    reconciler.tracker.touch(device_id)

    assert await store.toggle_enabled(device_id) is False

    device = store.devices[device_id]
    assert device.enabled is False
    assert device.is_online is False
    assert reconciler.tracker.online_count == 0
    assert store.layout == []
    assert store.dashboard_devices() == []
    assert [d.id for d in store.get_filtered()] == [device_id]

    assert await store.toggle_enabled(device_id) is True
    assert [entry.i for entry in store.layout] == [device_id]


@pytest.mark.asyncio
async def test_clear_all_then_re_add_same_topic(store, repository):
    first = await add(store, "a/1")
    await store.remove_devices([first])
    assert "a/1" in store.deleted_topics

    await store.clear_all()
    assert store.devices == {}
    assert store.layout == []
    assert store.deleted_topics == frozenset()

    device_id = await add(store, "a/1")
    assert store.devices[device_id].topic == "a/1"


@pytest.mark.asyncio
async def test_cleanup_invalid_is_idempotent(store, repository):
    repository.configs["tester"] = {
        "devices": {
            "good": {"id": "good", "name": "Good", "type": "relay", "topic": "a/1"},
            "nameless": {"id": "nameless", "name": "null", "topic": "a/2"},
            "broken": "not a device",
            "mismatch": {"id": "other", "name": "M", "topic": "a/3"},
        },
        "deviceLayouts": [{"i": "nameless", "x": 0, "y": 0, "w": 4, "h": 4}],
    }
    await store.load()

    assert await store.cleanup_invalid() == 3
    assert list(store.devices) == ["good"]
    assert [entry.i for entry in store.layout] == ["good"]
    assert await store.cleanup_invalid() == 0


@pytest.mark.asyncio
async def test_cleanup_runs_debounced_after_load(store, repository, scheduler):
    repository.configs["tester"] = {
        "devices": {"bad": {"id": "bad", "name": "", "topic": "x"}},
    }
    await store.load()
    assert "bad" in store.devices

    scheduler.advance(0.5)
    assert "bad" in store.devices

    scheduler.advance(0.5)
    await store.flush_pending()
    assert store.devices == {}
    assert repository.saves == 1


@pytest.mark.asyncio
async def test_debounced_cleanup_replaces_pending_run(store, scheduler):
    await add(store, "a/1")
    await add(store, "a/2")
    await add(store, "a/3")

    assert scheduler.pending == 1


@pytest.mark.asyncio
async def test_get_filtered_applies_every_filter(store):
    relay = await add(store, "home/kitchen/light", device_type="relay", room="Kitchen")
    temp = await add(store, "home/garage/temp", room="Garage", name="Garage Temp")
    await add(store, "home/kitchen/temp", room="Kitchen", enabled=False)
    store.apply_reading(temp, {"Temp": 5}, datetime.now(timezone.utc))

    async def ids(**filters):
        await store.set_filters(DeviceFilters(**filters))
        return [d.id for d in store.get_filtered()]

    assert len(await ids()) == 3
    assert await ids(type="relay") == [relay]
    assert await ids(status="online") == [temp]
    assert len(await ids(status="offline")) == 2
    assert len(await ids(room="Kitchen")) == 2
    assert await ids(controllable="true") == [relay]
    assert len(await ids(enabled="true")) == 2
    assert await ids(search="GARAGE") == [temp]
    assert await ids(search="kitchen/light") == [relay]
    assert await ids(room="Kitchen", enabled="true") == [relay]


@pytest.mark.asyncio
async def test_update_layout_clamps_sizes(store):
    device_id = await add(store, "a/1")

    layout = await store.update_layout([LayoutEntry(i=device_id, x=-3, y=2, w=20, h=1)])

    assert len(layout) == 1
    assert (layout[0].x, layout[0].y, layout[0].w, layout[0].h) == (0, 2, 12, 2)


@pytest.mark.asyncio
async def test_update_layout_drops_unknown_and_restores_missing(store):
    first = await add(store, "a/1")
    second = await add(store, "a/2")

    layout = await store.update_layout([LayoutEntry(i="ghost"), LayoutEntry(i=second, y=0)])

    assert [entry.i for entry in layout] == [second, first]
    assert layout[1].y == 4


@pytest.mark.asyncio
async def test_failed_save_keeps_state(store, repository):
    repository.fail = True
    device_id = await add(store, "a/1")

    assert device_id in store.devices
    assert store.last_save_ok is False

    repository.fail = False
    repository.error = RuntimeError("database is locked")
    await store.remove_device(device_id)
    assert device_id not in store.devices
    assert store.last_save_ok is False

    repository.error = None
    await store.clear_deleted_topics()
    assert store.last_save_ok is True


@pytest.mark.asyncio
async def test_snapshot_round_trip(reconciler, repository, transport, timeout_source, scheduler):
    store = reconciler.store
    kept = await add(store, "home/kitchen/light", device_type="relay", room="Kitchen")
    gone = await add(store, "home/hall/pir", device_type="motion_sensor")
    await store.remove_devices([gone])
    await store.update_device(kept, {"name": "Counter Light"})
    await store.set_filters(DeviceFilters(type="relay", search="light"))

    other = build_reconciler(repository, transport, timeout_source, scheduler, user_id="tester").store
    await other.load()

    assert {k: d.model_dump() for k, d in other.devices.items()} == {
        k: d.model_dump() for k, d in store.devices.items()
    }
    assert other.layout == store.layout
    assert other.deleted_topics == {"home/hall/pir"}
    assert other.filters == store.filters


@pytest.mark.asyncio
async def test_load_marks_devices_offline(store, repository):
    device_id = await add(store, "a/1")
    store.apply_reading(device_id, {"Temp": 1}, datetime.now(timezone.utc))
    await store.save()

    await store.load()

    assert store.devices[device_id].is_online is False
    assert store.devices[device_id].data == {"Temp": 1}


@pytest.mark.asyncio
async def test_late_reading_does_not_overwrite_newer_data(store):
    device_id = await add(store, "a/1")
    now = datetime.now(timezone.utc)

    assert store.apply_reading(device_id, {"Temp": 2}, now) is True
    store.mark_offline(device_id)
    assert store.apply_reading(device_id, {"Temp": 1}, now - timedelta(seconds=5)) is False

    device = store.devices[device_id]
    assert device.data == {"Temp": 2}
    assert device.is_online is True


@pytest.mark.asyncio
async def test_resolve_ignores_disabled_devices(store):
    device_id = await add(store, "a/+")
    assert store.resolve("a/1").id == device_id

    await store.toggle_enabled(device_id)
    assert store.resolve("a/1") is None


@pytest.mark.asyncio
async def test_load_tolerates_missing_config(store):
    await store.load()
    assert store.devices == {}
    assert store.filters == DeviceFilters()


@pytest.mark.asyncio
async def test_load_tolerates_bad_filters(store, repository):
    repository.configs["tester"] = {"deviceFilters": {"status": "sometimes"}, "deletedTopics": ["a", 3]}
    await store.load()
    assert store.filters == DeviceFilters()
    assert store.deleted_topics == {"a"}


@pytest.mark.asyncio
async def test_added_device_is_persisted_and_receives_messages(reconciler, repository):
    store = reconciler.store
    device_id = await store.add_device(DeviceCreate(name="Door", type="door_sensor", topic="AABBCC/door1"))

    assert device_id in repository.configs["tester"]["devices"]
    assert store.last_save_ok is True

    reconciler.handle_message(MqttMessage(topic="AABBCC/door1", payload='{"Door":"Open"}'))
    device = store.devices[device_id]
    assert device.data["Door"] == "Open"
    assert device.is_online is True


@pytest.mark.asyncio
async def test_topic_change_moves_subscription(store, transport):
    device_id = await add(store, "old/topic")
    transport.subscribed.clear()

    await store.update_device(device_id, {"topic": "new/topic"})

    assert transport.subscribed == ["new/topic"]
    assert transport.unsubscribed == ["old/topic"]


@pytest.mark.asyncio
async def test_topic_change_keeps_shared_subscription(store, transport):
    moved = await add(store, "shared/topic", name="One")
    await add(store, "shared/topic", name="Two")

    await store.update_device(moved, {"topic": "other/topic"})

    assert "other/topic" in transport.subscribed
    assert transport.unsubscribed == []


@pytest.mark.asyncio
async def test_topic_change_while_disconnected_does_not_touch_subscriptions(store, transport):
    device_id = await add(store, "old/topic")
    transport.is_connected = False
    transport.subscribed.clear()

    await store.update_device(device_id, {"topic": "new/topic"})

    assert transport.subscribed == []
    assert transport.unsubscribed == []
