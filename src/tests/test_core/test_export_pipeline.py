import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from edge_gateway.core.export import ExportPipeline
from edge_gateway.models.settings import ExportSettings
from edge_gateway.models.things import StorageTier
from edge_gateway.utils.exceptions import CommunicationError

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def rest():
    rest = MagicMock()
    rest.post = AsyncMock(return_value={"status": "ok"})
    return rest


@pytest.fixture
def pipeline(repository, rest):
    settings = ExportSettings(url="http://cloud.test/api/sensor-data", batch_size=50)
    return ExportPipeline(settings, repository, rest)


@pytest.mark.asyncio
async def test_failed_fast_path_is_picked_up_by_sweep(pipeline, repository, rest, make_reading):
    reading = await repository.insert(make_reading(temperature=21.0))
    rest.post.side_effect = CommunicationError("network unreachable")

    assert await pipeline.push(reading) is False
    assert (await repository.get(reading.id)).is_exported is False

    rest.post.side_effect = None
    assert await pipeline.sweep() == 1

    assert (await repository.get(reading.id)).is_exported is True
    url, payload = rest.post.await_args.args
    assert url == "http://cloud.test/api/sensor-data/batch"
    assert [item["id"] for item in payload] == [reading.id]
    assert pipeline.tracker.get_size() == 0


@pytest.mark.asyncio
async def test_fast_path_success_flags_row(pipeline, repository, rest, make_reading):
    reading = await repository.insert(make_reading())

    assert await pipeline.push(reading) is True

    assert (await repository.get(reading.id)).is_exported is True
    url, payload = rest.post.await_args.args
    assert url == "http://cloud.test/api/sensor-data"
    assert payload["sensor_id"] == "sensor1"


@pytest.mark.asyncio
async def test_failed_batch_changes_nothing(pipeline, repository, rest, make_reading):
    ids = [(await repository.insert(make_reading(timestamp=BASE + timedelta(seconds=i)))).id for i in range(3)]
    rest.post.side_effect = CommunicationError("timeout")

    assert await pipeline.sweep() == 0

    for reading_id in ids:
        assert (await repository.get(reading_id)).is_exported is False
    assert pipeline.tracker.get_size() == 0


@pytest.mark.asyncio
async def test_sweep_covers_all_tiers_and_deduplicates_alarms(pipeline, repository, rest, make_reading):
    alarm = await repository.insert(make_reading(alarm_triggered=True, alarm_message="too high"))
    minutely = await repository.insert(make_reading(tier=StorageTier.MINUTELY))
    hourly = await repository.insert(make_reading(tier=StorageTier.HOURLY))
    predicted = await repository.insert(make_reading(
        tier=StorageTier.PREDICTED, alarm_triggered=True, alarm_message="forecast"
    ))
    done = await repository.insert(make_reading(is_exported=True))

    assert await pipeline.sweep() == 4

    payload = rest.post.await_args.args[1]
    sent = sorted(item["id"] for item in payload)
    assert sent == sorted([alarm.id, minutely.id, hourly.id, predicted.id])
    assert done.id not in sent


@pytest.mark.asyncio
async def test_sweep_respects_batch_size(pipeline, repository, rest, make_reading):
    for i in range(5):
        await repository.insert(make_reading(timestamp=BASE + timedelta(seconds=i)))
    pipeline.set_batch_size(2)

    assert await pipeline.sweep() == 2
    assert len(rest.post.await_args.args[1]) == 2
    assert len(await repository.find_unexported()) == 3


@pytest.mark.asyncio
async def test_rows_claimed_by_fast_path_are_left_out_of_sweep(pipeline, repository, rest, make_reading):
    first = await repository.insert(make_reading(timestamp=BASE))
    second = await repository.insert(make_reading(timestamp=BASE + timedelta(seconds=1)))
    await pipeline.tracker.claim([first.id])

    await pipeline.sweep()

    sent = [item["id"] for item in rest.post.await_args.args[1]]
    assert sent == [second.id]
    assert pipeline.tracker.in_progress(first.id)


@pytest.mark.asyncio
async def test_fast_path_skips_row_the_sweep_already_exported(pipeline, repository, rest, make_reading):
    reading = await repository.insert(make_reading())

    assert await pipeline.sweep() == 1
    assert await pipeline.push(reading) is True

    assert rest.post.await_count == 1
    assert pipeline.tracker.get_size() == 0


@pytest.mark.asyncio
async def test_concurrent_sweeps_run_one_at_a_time(pipeline, repository, rest, make_reading):
    await repository.insert(make_reading())
    release = asyncio.Event()

    async def slow_post(url, data, timeout=None):
        await release.wait()
        return {"status": "ok"}

    rest.post.side_effect = slow_post
    first = asyncio.create_task(pipeline.sweep())
    await asyncio.sleep(0.05)

    assert await pipeline.sweep() == 0

    release.set()
    assert await first == 1
    assert rest.post.await_count == 1


@pytest.mark.asyncio
async def test_nothing_pending_sends_nothing(pipeline, rest):
    assert await pipeline.sweep() == 0
    rest.post.assert_not_awaited()
