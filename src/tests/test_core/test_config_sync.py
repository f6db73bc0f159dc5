import pytest
from unittest.mock import AsyncMock, MagicMock

from edge_gateway.core.alarm import AlarmEvaluator
from edge_gateway.core.config_sync import ConfigSync
from edge_gateway.models.remote import AlarmThresholds
from edge_gateway.models.settings import ConfigSyncSettings
from edge_gateway.utils.exceptions import CommunicationError

REMOTE_CONFIG = {
    "deviceId": "edge-001",
    "lastUpdated": "2024-05-01T10:00:00",
    "alarmThresholds": {"upper": 35.0},
    "uploadSchedule": {"batchSize": 20, "intervalMs": 15000},
    "sensorConfigs": [
        {"sensorId": "s1", "alarmThresholds": {"upper": 40.0, "lower": 5.0}, "pollIntervalMs": 500},
        {"sensorId": "s2", "pollIntervalMs": 2000},
        {"sensorId": "unknown", "alarmThresholds": {"upper": 99.0}},
    ],
}


@pytest.fixture
def rest():
    rest = MagicMock()
    rest.get = AsyncMock(return_value=REMOTE_CONFIG)
    return rest


@pytest.fixture
def alarms():
    return AlarmEvaluator(AlarmThresholds(upper=30.0, lower=10.0, deviation=2.0))


@pytest.fixture
def sync(rest, alarms):
    return ConfigSync(
        ConfigSyncSettings(url="http://cloud.test/api/device/{device_id}/config"),
        "edge-001", rest, alarms,
        polling=MagicMock(), exporter=MagicMock(),
        sensor_ids=["s1", "s2", "s3"],
    )


@pytest.mark.asyncio
async def test_sync_applies_thresholds_intervals_and_schedule(sync, rest, alarms):
    assert await sync.sync() is True

    rest.get.assert_awaited_once()
    assert rest.get.await_args.args[0] == "http://cloud.test/api/device/edge-001/config"

    s1 = alarms.effective_thresholds("s1")
    assert (s1.upper, s1.lower, s1.deviation) == (40.0, 5.0, 2.0)
    s2 = alarms.effective_thresholds("s2")
    assert (s2.upper, s2.lower) == (35.0, 10.0)
    assert "unknown" not in alarms.snapshot.sensor_overrides

    sync.polling.replace_intervals.assert_called_once_with({"s1": 500, "s2": 2000})
    sync.exporter.set_batch_size.assert_called_once_with(20)
    sync.exporter.set_interval.assert_called_once_with(15.0)
    assert sync.current_config.device_id == "edge-001"


@pytest.mark.asyncio
async def test_fetch_failure_keeps_last_good_config(sync, rest, alarms):
    await sync.sync()
    rest.get.side_effect = CommunicationError("connection refused")

    assert await sync.sync() is False

    assert alarms.effective_thresholds("s1").upper == 40.0
    assert sync.polling.replace_intervals.call_count == 1


@pytest.mark.asyncio
async def test_invalid_document_keeps_last_good_config(sync, rest, alarms):
    await sync.sync()
    rest.get.return_value = {"alarmThresholds": {"upper": "very hot"}}

    assert await sync.sync() is False
    assert alarms.effective_thresholds("s2").upper == 35.0


@pytest.mark.asyncio
async def test_empty_document_keeps_last_good_config(sync, rest, alarms):
    await sync.sync()
    rest.get.return_value = None

    assert await sync.sync() is False
    assert alarms.effective_thresholds("s1").upper == 40.0


@pytest.mark.asyncio
async def test_dropped_overrides_fall_back_to_next_layer(sync, rest, alarms):
    await sync.sync()
    rest.get.return_value = {"deviceId": "edge-001", "sensorConfigs": []}

    assert await sync.sync() is True

    assert alarms.effective_thresholds("s1").upper == 30.0
    sync.polling.replace_intervals.assert_called_with({})
