import asyncio

from bhejo.location_store import LocationStore, order_location_path, user_location_path
from bhejo.models import OrderStatus, TrackingRecord

from conftest import FailingRealtimeStore


def sample_record(**overrides):
    fields = dict(
        pickup_coords=(12.97, 77.59),
        delivery_coords=(12.99, 77.64),
        route=[(12.97, 77.59), (12.98, 77.61), (12.99, 77.64)],
        current_position=(12.97, 77.59),
        last_updated="2026-10-21T12:00:00+00:00",
    )
    fields.update(overrides)
    return TrackingRecord(**fields)


def test_paths():
    assert user_location_path("u1") == "locations/u1"
    assert order_location_path("o1") == "orderLocations/o1"


def test_user_location_roundtrip(location_store):
    assert asyncio.run(location_store.set_user_location("u1", (19.07, 72.87))) is True
    location = asyncio.run(location_store.get_user_location("u1"))
    assert location.position == (19.07, 72.87)
    assert location.timestamp


def test_missing_user_location_is_none(location_store):
    assert asyncio.run(location_store.get_user_location("nobody")) is None


def test_failed_writes_return_false():
    store = LocationStore(FailingRealtimeStore())
    assert asyncio.run(store.set_user_location("u1", (1.0, 2.0))) is False
    assert asyncio.run(store.set_tracking("o1", sample_record())) is False
    assert asyncio.run(store.update_tracking("o1", {"progress": 5})) is False


def test_tracking_roundtrip(location_store):
    record = sample_record(status=OrderStatus.ASSIGNED, progress=12.0, partner_id="p1", partner_position=(1.0, 2.0))
    asyncio.run(location_store.set_tracking("o1", record))
    assert asyncio.run(location_store.get_tracking("o1")) == record


def test_malformed_tracking_record_reads_as_absent(location_store, realtime):
    asyncio.run(realtime.set("orderLocations/bad", {"route": [[1, 2]], "progress": 0}))
    asyncio.run(realtime.set("orderLocations/worse", {**sample_record().to_dict(), "progress": 140}))

    assert asyncio.run(location_store.get_tracking("bad")) is None
    assert asyncio.run(location_store.get_tracking("worse")) is None


def test_list_tracking_skips_malformed(location_store, realtime):
    asyncio.run(location_store.set_tracking("good", sample_record()))
    asyncio.run(realtime.set("orderLocations/bad", {"status": "pending"}))

    records = asyncio.run(location_store.list_tracking())
    assert list(records) == ["good"]


def test_subscribe_tracking_pushes_typed_records(location_store):
    seen = []
    unsubscribe = location_store.subscribe_tracking("o1", seen.append)

    asyncio.run(location_store.set_tracking("o1", sample_record()))
    asyncio.run(location_store.update_tracking("o1", {"progress": 50, "status": "in-transit"}))
    unsubscribe()
    asyncio.run(location_store.update_tracking("o1", {"progress": 60}))

    assert seen[0] is None
    assert [r.progress for r in seen[1:]] == [0.0, 50.0]
    assert seen[-1].status is OrderStatus.IN_TRANSIT


def test_subscribe_user_location(location_store):
    seen = []
    location_store.subscribe_user_location("u1", seen.append)
    asyncio.run(location_store.set_user_location("u1", (1.0, 2.0)))
    assert seen[0] is None
    assert seen[1].position == (1.0, 2.0)
