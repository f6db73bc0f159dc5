from enum import Enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from ..utils.helpers import utcnow, as_utc


class StorageTier(str, Enum):
    REALTIME = "REALTIME"
    MINUTELY = "MINUTELY"
    HOURLY = "HOURLY"
    # Forecast alarms from the trend monitor, never aggregated
    PREDICTED = "PREDICTED"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def can_advance_to(self, target: "StorageTier") -> bool:
        """Tiers only move REALTIME -> MINUTELY -> HOURLY."""
        if self is StorageTier.PREDICTED or target is StorageTier.PREDICTED:
            return False
        return target.rank == self.rank + 1


_TIER_RANK = {
    StorageTier.REALTIME: 0,
    StorageTier.MINUTELY: 1,
    StorageTier.HOURLY: 2,
    StorageTier.PREDICTED: -1,
}


class Reading(BaseModel):
    """A persisted sample or aggregate of one sensor."""
    id: Optional[int] = None
    device_id: str
    sensor_id: str
    sensor_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    predicted_temperature: Optional[float] = None
    alarm_triggered: bool = False
    alarm_message: Optional[str] = None
    is_exported: bool = False
    storage_tier: StorageTier = StorageTier.REALTIME

    @field_validator('timestamp')
    def normalise_timestamp(cls, v):
        return as_utc(v)

    @property
    def key(self) -> tuple:
        """Identity used by downstream consumers, independent of arrival order."""
        return (self.sensor_id, self.timestamp)

    def export_payload(self) -> dict:
        return self.model_dump(mode="json")
