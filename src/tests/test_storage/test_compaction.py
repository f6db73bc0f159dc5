import logging
import pytest
from datetime import datetime, timedelta, timezone

from edge_gateway.core.compaction import (
    CompactionEngine, TierPolicy, average_readings, downsample
)
from edge_gateway.models.settings import RetentionSettings
from edge_gateway.models.things import StorageTier

T0 = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def engine(repository):
    return CompactionEngine(repository, RetentionSettings())


async def insert_bucket(repository, make_reading, exported=True):
    rows = []
    for second, temperature in ((1, 20.0), (3, 22.0), (4, 24.0)):
        rows.append(await repository.insert(
            make_reading(timestamp=at(second), temperature=temperature, is_exported=exported)
        ))
    return rows


async def compact_five_seconds(engine):
    return await engine.compact_tier(
        StorageTier.REALTIME, StorageTier.MINUTELY, 5,
        aggregate_before=at(5), not_before=at(-3600),
    )


@pytest.mark.asyncio
async def test_bucket_is_averaged_and_sources_removed(engine, repository, make_reading):
    await insert_bucket(repository, make_reading)

    result = await compact_five_seconds(engine)

    assert result.aggregates_created == 1
    assert result.sources_deleted == 3
    aggregates = await repository.find_range(at(0), at(5), StorageTier.MINUTELY)
    assert len(aggregates) == 1
    aggregate = aggregates[0]
    assert aggregate.timestamp == at(0)
    assert aggregate.temperature == pytest.approx(22.0)
    assert aggregate.humidity is None
    assert aggregate.pressure is None
    assert aggregate.is_exported is False
    assert aggregate.alarm_triggered is False
    assert await repository.find_range(at(0), at(5), StorageTier.REALTIME) == []


@pytest.mark.asyncio
async def test_repeated_pass_creates_no_duplicate(engine, repository, make_reading):
    await insert_bucket(repository, make_reading)
    await compact_five_seconds(engine)

    # Same bucket again, as after a crash between write and delete
    await insert_bucket(repository, make_reading)
    result = await compact_five_seconds(engine)

    assert result.aggregates_created == 0
    assert result.buckets_skipped == 1
    assert result.sources_deleted == 3
    assert len(await repository.find_range(at(0), at(5), StorageTier.MINUTELY)) == 1


@pytest.mark.asyncio
async def test_unexported_sources_survive_until_exported(engine, repository, make_reading):
    rows = await insert_bucket(repository, make_reading, exported=False)

    result = await compact_five_seconds(engine)

    assert result.aggregates_created == 1
    assert result.sources_retained == 3
    assert len(await repository.find_range(at(0), at(5), StorageTier.REALTIME)) == 3

    await repository.mark_exported([r.id for r in rows])
    result = await compact_five_seconds(engine)

    assert result.aggregates_created == 0
    assert result.sources_deleted == 3
    assert len(await repository.find_range(at(0), at(5), StorageTier.MINUTELY)) == 1
    assert await repository.find_range(at(0), at(5), StorageTier.REALTIME) == []


@pytest.mark.asyncio
async def test_incomplete_bucket_is_left_alone(engine, repository, make_reading):
    await insert_bucket(repository, make_reading)
    late = await repository.insert(make_reading(timestamp=at(6), is_exported=True))

    await engine.compact_tier(
        StorageTier.REALTIME, StorageTier.MINUTELY, 5,
        aggregate_before=at(8), not_before=at(-3600),
    )

    assert await repository.get(late.id) is not None
    assert await repository.find_range(at(5), at(10), StorageTier.MINUTELY) == []


@pytest.mark.asyncio
async def test_measurements_are_averaged_independently(engine, repository, make_reading):
    await repository.insert(make_reading(timestamp=at(1), temperature=20.0, humidity=40.0, is_exported=True))
    await repository.insert(make_reading(timestamp=at(2), temperature=21.0, is_exported=True))
    await repository.insert(make_reading(sensor_id="sensor2", timestamp=at(2), temperature=30.0, is_exported=True))

    await compact_five_seconds(engine)

    s1 = await repository.find_range(at(0), at(5), StorageTier.MINUTELY, sensor_id="sensor1")
    s2 = await repository.find_range(at(0), at(5), StorageTier.MINUTELY, sensor_id="sensor2")
    assert s1[0].temperature == pytest.approx(20.5)
    assert s1[0].humidity == pytest.approx(40.0)
    assert s2[0].temperature == pytest.approx(30.0)


@pytest.mark.asyncio
async def test_tiers_never_move_backwards(engine):
    with pytest.raises(ValueError):
        await engine.compact_tier(StorageTier.MINUTELY, StorageTier.REALTIME, 60, at(3600), at(0))
    with pytest.raises(ValueError):
        await engine.compact_tier(StorageTier.REALTIME, StorageTier.HOURLY, 3600, at(3600), at(0))
    with pytest.raises(ValueError):
        TierPolicy(StorageTier.HOURLY, StorageTier.MINUTELY, 60, timedelta(hours=1), timedelta(days=1))


@pytest.mark.asyncio
async def test_purge_only_removes_exported_rows(engine, repository, make_reading, caplog):
    exported = await repository.insert(make_reading(timestamp=at(0), tier=StorageTier.HOURLY, is_exported=True))
    pending = await repository.insert(make_reading(timestamp=at(1), tier=StorageTier.HOURLY))
    recent = await repository.insert(make_reading(timestamp=at(100), tier=StorageTier.HOURLY, is_exported=True))

    with caplog.at_level(logging.WARNING):
        deleted = await engine.purge(StorageTier.HOURLY, before=at(50))

    assert deleted == 1
    assert await repository.get(exported.id) is None
    assert await repository.get(pending.id) is not None
    assert await repository.get(recent.id) is not None
    assert any("not exported" in record.message for record in caplog.records)


@pytest.mark.asyncio
async def test_full_pass_never_deletes_unexported_rows(repository, make_reading):
    engine = CompactionEngine(repository, RetentionSettings(realtime_minutes=10, minutely_hours=1, hourly_days=1))
    now = datetime(2024, 1, 10, 12, 0, 30, tzinfo=timezone.utc)
    ages = [timedelta(minutes=15), timedelta(hours=2), timedelta(days=3)]

    pending = []
    for tier in (StorageTier.REALTIME, StorageTier.MINUTELY, StorageTier.HOURLY, StorageTier.PREDICTED):
        for age in ages:
            pending.append(await repository.insert(make_reading(timestamp=now - age, tier=tier)))

    await engine.run_pass(now=now)

    for reading in pending:
        assert await repository.get(reading.id) is not None


@pytest.mark.asyncio
async def test_full_pass_rolls_up_and_purges(repository, make_reading):
    engine = CompactionEngine(repository, RetentionSettings(realtime_minutes=10, minutely_hours=1, hourly_days=1))
    now = datetime(2024, 1, 10, 12, 0, 30, tzinfo=timezone.utc)

    raw = await repository.insert(make_reading(timestamp=now - timedelta(minutes=20), is_exported=True))
    minutely = await repository.insert(make_reading(
        timestamp=now - timedelta(hours=3), tier=StorageTier.MINUTELY, is_exported=True
    ))
    old_hourly = await repository.insert(make_reading(
        timestamp=now - timedelta(days=2), tier=StorageTier.HOURLY, is_exported=True
    ))

    results = await engine.run_pass(now=now)

    assert [(r.source, r.target, r.aggregates_created) for r in results] == [
        (StorageTier.REALTIME, StorageTier.MINUTELY, 1),
        (StorageTier.MINUTELY, StorageTier.HOURLY, 1),
    ]
    assert await repository.get(raw.id) is None
    assert await repository.get(minutely.id) is None
    assert await repository.get(old_hourly.id) is None
    assert len(await repository.find_unexported(StorageTier.MINUTELY)) == 1
    assert len(await repository.find_unexported(StorageTier.HOURLY)) == 1


@pytest.mark.asyncio
async def test_overlapping_pass_is_skipped(engine):
    async with engine._pass_lock:
        assert await engine.run_pass() is None


def test_downsample_averages_per_step(make_reading):
    readings = [
        make_reading(timestamp=at(0), temperature=20.0),
        make_reading(timestamp=at(4), temperature=22.0),
        make_reading(timestamp=at(5), temperature=30.0),
    ]
    points = downsample(readings, 5)

    assert [p.timestamp for p in points] == [at(0), at(5)]
    assert [p.temperature for p in points] == [21.0, 30.0]


def test_average_keeps_missing_measurements_unset(make_reading):
    aggregate = average_readings(
        [make_reading(temperature=10.0), make_reading(temperature=20.0)], at(0), StorageTier.HOURLY
    )
    assert aggregate.temperature == 15.0
    assert aggregate.humidity is None
    assert aggregate.storage_tier is StorageTier.HOURLY
