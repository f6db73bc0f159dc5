import pytest
from datetime import datetime, timedelta, timezone

from edge_gateway.models.things import StorageTier
from edge_gateway.storage.cache import LatestReadingCache
from edge_gateway.storage.sync_manager import ExportTracker

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_insert_and_get_round_trip(repository, make_reading):
    stored = await repository.insert(make_reading(humidity=45.5, alarm_message="No Alarm"))

    assert stored.id is not None
    loaded = await repository.get(stored.id)
    assert loaded == stored
    assert loaded.timestamp.tzinfo is not None


@pytest.mark.asyncio
async def test_non_utc_timestamps_are_stored_as_utc(repository, make_reading):
    plus_two = timezone(timedelta(hours=2))
    stored = await repository.insert(make_reading(timestamp=datetime(2024, 1, 1, 2, 0, tzinfo=plus_two)))

    loaded = await repository.get(stored.id)
    assert loaded.timestamp == T0
    assert await repository.find_range(T0, T0 + timedelta(seconds=1), StorageTier.REALTIME) == [loaded]


@pytest.mark.asyncio
async def test_update_enrichment(repository, make_reading):
    stored = await repository.insert(make_reading())
    enriched = stored.model_copy(update={
        "predicted_temperature": 19.0, "alarm_triggered": True, "alarm_message": "too high"
    })

    await repository.update_enrichment(enriched)

    loaded = await repository.get(stored.id)
    assert loaded.predicted_temperature == 19.0
    assert loaded.alarm_triggered is True
    assert loaded.alarm_message == "too high"
    assert loaded.temperature == stored.temperature


@pytest.mark.asyncio
async def test_find_range_is_half_open_and_filtered(repository, make_reading):
    inside = await repository.insert(make_reading(timestamp=T0))
    await repository.insert(make_reading(timestamp=T0 + timedelta(seconds=10)))
    await repository.insert(make_reading(sensor_id="other", timestamp=T0))
    await repository.insert(make_reading(timestamp=T0, tier=StorageTier.MINUTELY))

    rows = await repository.find_range(T0, T0 + timedelta(seconds=10), StorageTier.REALTIME, sensor_id="sensor1")

    assert [r.id for r in rows] == [inside.id]


@pytest.mark.asyncio
async def test_mark_exported_touches_only_given_rows(repository, make_reading):
    first = await repository.insert(make_reading())
    second = await repository.insert(make_reading())

    assert await repository.mark_exported([first.id, 999]) == 1

    assert (await repository.get(first.id)).is_exported is True
    assert (await repository.get(second.id)).is_exported is False


@pytest.mark.asyncio
async def test_delete_exported_before_spares_unexported(repository, make_reading):
    exported = await repository.insert(make_reading(is_exported=True))
    pending = await repository.insert(make_reading())

    assert await repository.delete_exported_before(T0 + timedelta(days=1), StorageTier.REALTIME) == 1
    assert await repository.count_unexported_before(T0 + timedelta(days=1), StorageTier.REALTIME) == 1
    assert await repository.get(exported.id) is None
    assert await repository.get(pending.id) is not None


@pytest.mark.asyncio
async def test_failed_transaction_rolls_back(repository, make_reading):
    with pytest.raises(RuntimeError):
        async with repository.transaction() as conn:
            await repository.insert(make_reading(), conn=conn)
            raise RuntimeError("boom")

    assert await repository.find_unexported() == []


@pytest.mark.asyncio
async def test_latest_for_sensor_and_cache_rebuild(repository, make_reading):
    await repository.insert(make_reading(timestamp=T0))
    newest = await repository.insert(make_reading(timestamp=T0 + timedelta(minutes=1)))
    await repository.insert(make_reading(timestamp=T0 + timedelta(hours=1), tier=StorageTier.MINUTELY))

    cache = LatestReadingCache()
    loaded = await cache.rebuild(repository, ["sensor1", "sensor2"])

    assert loaded == 1
    assert cache.get("sensor1") == newest
    assert cache.get("sensor2") is None


def test_cache_keeps_newest_reading(make_reading):
    cache = LatestReadingCache()
    newer = make_reading(timestamp=T0 + timedelta(seconds=5))

    assert cache.set(newer) is True
    assert cache.set(make_reading(timestamp=T0)) is False
    assert cache.get("sensor1") == newer


@pytest.mark.asyncio
async def test_export_tracker_claims_are_exclusive():
    tracker = ExportTracker()

    assert await tracker.claim([1, 2]) == [1, 2]
    assert await tracker.claim([2, 3]) == [3]

    await tracker.release([1, 2, 3])
    assert tracker.get_size() == 0
    assert await tracker.claim([2]) == [2]
