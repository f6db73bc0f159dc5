import pytest
import pytest_asyncio
from datetime import datetime, timezone

from edge_gateway.models.things import Reading, StorageTier
from edge_gateway.storage.sensor_database import SensorDatabase


@pytest_asyncio.fixture
async def database(tmp_path):
    db = SensorDatabase(str(tmp_path / "readings.db"), max_connections=2)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def repository(database):
    return database.readings


@pytest.fixture
def make_reading():
    def _make(sensor_id="sensor1", timestamp=None, temperature=20.0, tier=StorageTier.REALTIME, **kwargs):
        return Reading(
            device_id="edge-test",
            sensor_id=sensor_id,
            sensor_name=f"Sensor {sensor_id}",
            timestamp=timestamp or datetime(2024, 1, 1, tzinfo=timezone.utc),
            temperature=temperature,
            storage_tier=tier,
            **kwargs
        )
    return _make
