# src/edge_gateway/api/routes.py
from fastapi import APIRouter, HTTPException, Query
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.remote import AlarmThresholds
from ..models.sensor import SensorDefinition
from ..models.things import Reading
from ..utils.logging import get_logger
from .dependencies import QueriesDependency

logger = get_logger(__name__)

sensor_router = APIRouter()


class PollIntervalUpdate(BaseModel):
    poll_interval_ms: Optional[int] = Field(None, gt=0, description="None reverts to the configured interval")


def _require_sensor(queries, sensor_id: str) -> None:
    if not queries.has_sensor(sensor_id):
        raise HTTPException(status_code=404, detail=f"Unknown sensor {sensor_id}")


@sensor_router.get("/sensors", response_model=List[SensorDefinition])
async def list_sensors(queries: QueriesDependency) -> List[SensorDefinition]:
    return queries.sensors()


@sensor_router.get("/sensors/poll-interval")
async def get_default_poll_interval(queries: QueriesDependency) -> Dict[str, int]:
    return {"poll_interval_ms": queries.default_poll_interval_ms()}


@sensor_router.get("/readings/latest", response_model=List[Reading])
async def get_latest_readings(queries: QueriesDependency) -> List[Reading]:
    return queries.latest_all()


@sensor_router.get("/readings/recent", response_model=List[Reading])
async def get_recent_readings(
    queries: QueriesDependency,
    count: int = Query(100, gt=0, le=10000),
) -> List[Reading]:
    try:
        return await queries.recent(count)
    except Exception as e:
        logger.error(f"Error reading recent data: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@sensor_router.get("/readings/alarms", response_model=List[Reading])
async def get_alarm_readings(
    queries: QueriesDependency,
    limit: int = Query(100, gt=0, le=10000),
) -> List[Reading]:
    try:
        return await queries.alarms(limit)
    except Exception as e:
        logger.error(f"Error reading alarms: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@sensor_router.get("/sensors/{sensor_id}/latest", response_model=Reading)
async def get_latest_reading(sensor_id: str, queries: QueriesDependency) -> Reading:
    _require_sensor(queries, sensor_id)
    reading = queries.latest(sensor_id)
    if reading is None:
        raise HTTPException(status_code=404, detail=f"No reading yet for {sensor_id}")
    return reading


@sensor_router.get("/sensors/{sensor_id}/recent", response_model=List[Reading])
async def get_recent_sensor_readings(
    sensor_id: str,
    queries: QueriesDependency,
    count: int = Query(100, gt=0, le=10000),
) -> List[Reading]:
    _require_sensor(queries, sensor_id)
    try:
        return await queries.recent(count, sensor_id=sensor_id)
    except Exception as e:
        logger.error(f"Error reading recent data of {sensor_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@sensor_router.get("/sensors/{sensor_id}/alarms", response_model=List[Reading])
async def get_sensor_alarms(
    sensor_id: str,
    queries: QueriesDependency,
    limit: int = Query(100, gt=0, le=10000),
) -> List[Reading]:
    _require_sensor(queries, sensor_id)
    try:
        return await queries.alarms(limit, sensor_id=sensor_id)
    except Exception as e:
        logger.error(f"Error reading alarms of {sensor_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@sensor_router.get("/sensors/{sensor_id}/history", response_model=List[Reading])
async def get_sensor_history(
    sensor_id: str,
    queries: QueriesDependency,
    start: datetime = Query(..., description="ISO 8601, naive values are UTC"),
    end: datetime = Query(..., description="ISO 8601, inclusive"),
) -> List[Reading]:
    _require_sensor(queries, sensor_id)
    try:
        return await queries.history_range(sensor_id, start, end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Error reading history of {sensor_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@sensor_router.get("/sensors/{sensor_id}/thresholds")
async def get_thresholds(sensor_id: str, queries: QueriesDependency) -> Dict[str, Any]:
    _require_sensor(queries, sensor_id)
    t = queries.thresholds(sensor_id)
    return {"upper": t.upper, "lower": t.lower, "deviation": t.deviation}


@sensor_router.put("/thresholds")
async def update_global_thresholds(thresholds: AlarmThresholds, queries: QueriesDependency) -> Dict[str, str]:
    queries.update_global_thresholds(thresholds)
    return {"status": "updated"}


@sensor_router.put("/sensors/{sensor_id}/thresholds")
async def update_sensor_thresholds(sensor_id: str, thresholds: AlarmThresholds,
                                   queries: QueriesDependency) -> Dict[str, str]:
    _require_sensor(queries, sensor_id)
    queries.update_sensor_thresholds(sensor_id, thresholds)
    return {"status": "updated"}


@sensor_router.delete("/sensors/{sensor_id}/thresholds")
async def clear_sensor_thresholds(sensor_id: str, queries: QueriesDependency) -> Dict[str, str]:
    _require_sensor(queries, sensor_id)
    queries.update_sensor_thresholds(sensor_id, None)
    return {"status": "cleared"}


@sensor_router.put("/sensors/{sensor_id}/poll-interval")
async def update_poll_interval(sensor_id: str, update: PollIntervalUpdate,
                               queries: QueriesDependency) -> Dict[str, Any]:
    _require_sensor(queries, sensor_id)
    queries.update_poll_interval(sensor_id, update.poll_interval_ms)
    return {"sensor_id": sensor_id, "poll_interval_ms": queries.poll_interval(sensor_id)}
