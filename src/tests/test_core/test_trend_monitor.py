import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from edge_gateway.core.alarm import AlarmEvaluator
from edge_gateway.core.trend import TrendMonitor
from edge_gateway.models.remote import AlarmThresholds
from edge_gateway.models.sensor import RegisterConfig, SensorDefinition
from edge_gateway.models.settings import TrendSettings
from edge_gateway.models.things import StorageTier

NOW = datetime(2024, 1, 1, 12, 0, 2, tzinfo=timezone.utc)


@pytest.fixture
def sensor():
    return SensorDefinition(sensor_id="sensor1", connection="bus1", temperature=RegisterConfig(address=0))


@pytest.fixture
def prediction():
    client = MagicMock()
    client.predict_trend = AsyncMock(return_value=[25.0, 31.5, 35.0])
    return client


@pytest.fixture
def monitor(repository, prediction, sensor):
    exporter = MagicMock()
    exporter.push = AsyncMock(return_value=True)
    alarms = AlarmEvaluator(AlarmThresholds(upper=30.0, lower=10.0, deviation=2.0))
    return TrendMonitor(TrendSettings(), "edge-test", [sensor], repository, prediction, alarms, exporter)


async def fill_history(repository, make_reading, points):
    for i in range(1, points + 1):
        await repository.insert(make_reading(timestamp=NOW - timedelta(seconds=5 * i), temperature=24.0))


@pytest.mark.asyncio
async def test_first_forecast_crossing_is_stored_and_exported(monitor, repository, make_reading, sensor, prediction):
    await fill_history(repository, make_reading, 120)

    alarm = await monitor.check_sensor(sensor, now=NOW)

    history = prediction.predict_trend.await_args.args[1]
    assert len(history) >= 96
    assert alarm.storage_tier is StorageTier.PREDICTED
    assert alarm.temperature == 31.5
    assert alarm.predicted_temperature == 31.5
    assert alarm.alarm_triggered is True
    assert alarm.timestamp == NOW + timedelta(seconds=10)
    assert "10s" in alarm.alarm_message
    monitor.exporter.push.assert_awaited_once_with(alarm)

    stored = await repository.find_range(NOW, NOW + timedelta(minutes=1), StorageTier.PREDICTED)
    assert [r.id for r in stored] == [alarm.id]


@pytest.mark.asyncio
async def test_thin_history_skips_prediction(monitor, repository, make_reading, sensor, prediction):
    await fill_history(repository, make_reading, 50)

    assert await monitor.check_sensor(sensor, now=NOW) is None
    prediction.predict_trend.assert_not_awaited()


@pytest.mark.asyncio
async def test_forecast_inside_band_raises_nothing(monitor, repository, make_reading, sensor, prediction):
    await fill_history(repository, make_reading, 120)
    prediction.predict_trend.return_value = [24.0, 25.0, 26.0]

    assert await monitor.check_sensor(sensor, now=NOW) is None
    assert await repository.find_unexported(StorageTier.PREDICTED) == []
