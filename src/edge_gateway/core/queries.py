from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..models.remote import AlarmThresholds
from ..models.sensor import SensorDefinition
from ..models.settings import RetentionSettings
from ..models.things import Reading, StorageTier
from ..storage.cache import LatestReadingCache
from ..storage.readings_db import ReadingRepository
from ..utils.helpers import as_utc, utcnow
from .alarm import AlarmEvaluator, EffectiveThresholds
from .polling import PollingService


class GatewayQueries:
    """Read side and runtime tuning, as exposed to the REST layer."""
    def __init__(self, repository: ReadingRepository, cache: LatestReadingCache,
                 retention: RetentionSettings, alarms: AlarmEvaluator, polling: PollingService):
        self.repository = repository
        self.cache = cache
        self.retention = retention
        self.evaluator = alarms
        self.polling = polling

    def sensors(self) -> List[SensorDefinition]:
        return self.polling.sensors

    def default_poll_interval_ms(self) -> int:
        return self.polling.intervals.default_ms

    def has_sensor(self, sensor_id: str) -> bool:
        return any(s.sensor_id == sensor_id for s in self.polling.sensors)

    def latest(self, sensor_id: str) -> Optional[Reading]:
        return self.cache.get(sensor_id)

    def latest_all(self) -> List[Reading]:
        return sorted(self.cache.snapshot(), key=lambda r: r.sensor_id)

    def tier_windows(self, now: datetime) -> List[Tuple[StorageTier, datetime, datetime]]:
        """Time span each tier is expected to cover, newest tier first."""
        realtime_edge = now - timedelta(minutes=self.retention.realtime_minutes)
        minutely_edge = now - timedelta(hours=self.retention.minutely_hours)
        hourly_edge = now - timedelta(days=self.retention.hourly_days)
        return [
            (StorageTier.REALTIME, realtime_edge, now),
            (StorageTier.MINUTELY, minutely_edge, realtime_edge),
            (StorageTier.HOURLY, hourly_edge, minutely_edge),
        ]

    async def recent(self, count: int, sensor_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> List[Reading]:
        """
        Up to `count` readings, newest first, stitched together from the
        raw, minutely and hourly tiers.
        """
        if count <= 0:
            return []
        now = now or utcnow()
        # The REALTIME window ends now; include just-written rows
        upper_bound = now + timedelta(microseconds=1)

        collected: Dict[int, Reading] = {}
        for tier, start, end in self.tier_windows(now):
            if tier is StorageTier.REALTIME:
                end = upper_bound
            for reading in await self.repository.find_range(start, end, tier, sensor_id=sensor_id):
                collected[reading.id] = reading

        readings = sorted(collected.values(), key=lambda r: (r.timestamp, r.id), reverse=True)
        return readings[:count]

    async def alarms(self, limit: int = 100, sensor_id: Optional[str] = None) -> List[Reading]:
        if sensor_id is None:
            return await self.repository.find_alarms(limit=limit)
        return await self.repository.find_alarms(limit=limit, sensor_id=sensor_id)

    async def history_range(self, sensor_id: str, start: datetime, end: datetime,
                            now: Optional[datetime] = None) -> List[Reading]:
        """
        Readings of one sensor with start <= timestamp <= end, oldest first.
        Each tier only contributes the part of the range it is meant to
        cover, so raw rows and their aggregates are never returned twice.
        """
        start, end = as_utc(start), as_utc(end)
        if end < start:
            raise ValueError("end must not be before start")
        now = now or utcnow()
        upper_bound = end + timedelta(microseconds=1)

        collected: Dict[int, Reading] = {}
        for tier, tier_start, tier_end in self.tier_windows(now):
            if tier is StorageTier.REALTIME:
                tier_end = max(tier_end + timedelta(microseconds=1), upper_bound)
            window_start = max(start, tier_start)
            window_end = min(upper_bound, tier_end)
            if window_start >= window_end:
                continue
            for reading in await self.repository.find_range(window_start, window_end, tier, sensor_id=sensor_id):
                collected[reading.id] = reading

        return sorted(collected.values(), key=lambda r: (r.timestamp, r.id))

    def thresholds(self, sensor_id: str) -> EffectiveThresholds:
        return self.evaluator.effective_thresholds(sensor_id)

    def update_global_thresholds(self, thresholds: Optional[AlarmThresholds]) -> None:
        self.evaluator.update_global(thresholds)

    def update_sensor_thresholds(self, sensor_id: str, thresholds: Optional[AlarmThresholds]) -> None:
        self.evaluator.update_sensor(sensor_id, thresholds)

    def update_poll_interval(self, sensor_id: str, interval_ms: Optional[int]) -> None:
        self.polling.update_sensor_interval(sensor_id, interval_ms)

    def poll_interval(self, sensor_id: str) -> Optional[int]:
        for sensor in self.polling.sensors:
            if sensor.sensor_id == sensor_id:
                return self.polling.intervals.effective(sensor)
        return None
