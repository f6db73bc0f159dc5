from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class AlarmThresholds(BaseModel):
    """
    Threshold triple. Any field may be missing, which means
    "use the next layer down", never zero.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    upper: Optional[float] = None
    lower: Optional[float] = None
    deviation: Optional[float] = None


class SensorRuntimeConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sensor_id: str = Field(..., alias="sensorId")
    alarm_thresholds: Optional[AlarmThresholds] = Field(None, alias="alarmThresholds")
    poll_interval_ms: Optional[int] = Field(None, alias="pollIntervalMs", gt=0)


class UploadSchedule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: Optional[int] = Field(None, alias="batchSize", gt=0)
    interval_ms: Optional[int] = Field(None, alias="intervalMs", gt=0)


class EdgeConfig(BaseModel):
    """Document served by the remote config endpoint for this device."""
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(None, alias="deviceId")
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")
    alarm_thresholds: Optional[AlarmThresholds] = Field(None, alias="alarmThresholds")
    upload_schedule: Optional[UploadSchedule] = Field(None, alias="uploadSchedule")
    sensor_configs: Optional[List[SensorRuntimeConfig]] = Field(None, alias="sensorConfigs")
