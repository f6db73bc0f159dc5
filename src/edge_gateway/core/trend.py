from datetime import datetime, timedelta
from typing import List, Optional
import asyncio
import traceback

from ..models.sensor import SensorDefinition
from ..models.settings import TrendSettings
from ..models.things import Reading, StorageTier
from ..storage.readings_db import ReadingRepository
from ..utils.helpers import utcnow
from ..utils.logging import get_logger
from .alarm import AlarmEvaluator
from .compaction import downsample
from .export import ExportPipeline
from .prediction import PredictionClient

logger = get_logger(__name__)


class TrendMonitor:
    """
    Forecast alarms.

    Periodically feeds each sensor's recent history, downsampled to one
    point per step, to the trend predictor. The first forecast point
    outside the sensor's effective [lower, upper] band is stored as a
    PREDICTED reading and pushed out right away.
    """
    def __init__(self, settings: TrendSettings, device_id: str, sensors: List[SensorDefinition],
                 repository: ReadingRepository, prediction: PredictionClient,
                 alarms: AlarmEvaluator, exporter: Optional[ExportPipeline] = None):
        self.settings = settings
        self.device_id = device_id
        self.sensors = list(sensors)
        self.repository = repository
        self.prediction = prediction
        self.alarms = alarms
        self.exporter = exporter
        self.is_running = False

    @property
    def expected_points(self) -> int:
        return self.settings.history_minutes * 60 // self.settings.step_seconds

    async def history(self, sensor_id: str, now: datetime) -> List[Reading]:
        step = self.settings.step_seconds
        start = now - timedelta(minutes=self.settings.history_minutes, seconds=step)
        rows = await self.repository.find_range(start, now, StorageTier.REALTIME, sensor_id=sensor_id)
        return downsample(rows, step)

    async def check_sensor(self, sensor: SensorDefinition, now: Optional[datetime] = None) -> Optional[Reading]:
        now = now or utcnow()
        history = await self.history(sensor.sensor_id, now)

        required = self.expected_points * self.settings.min_coverage
        if len(history) < required:
            logger.debug(
                f"Not enough history for {sensor.sensor_id} ({len(history)} of {self.expected_points} points)"
            )
            return None

        forecast = await self.prediction.predict_trend(sensor.sensor_id, history, self.settings.horizon_seconds)
        if not forecast:
            return None

        thresholds = self.alarms.effective_thresholds(sensor.sensor_id)
        step = self.settings.step_seconds
        for i, value in enumerate(forecast):
            if thresholds.lower <= value <= thresholds.upper:
                continue
            ahead = (i + 1) * step
            message = (
                f"[Predicted alarm] Sensor [{sensor.display_name} ({sensor.sensor_id})] expected to leave "
                f"its range in {ahead}s: {value:.2f}°C (range: {thresholds.lower:.2f}°C ~ {thresholds.upper:.2f}°C)"
            )
            logger.warning(message)
            alarm = await self.repository.insert(Reading(
                device_id=self.device_id,
                sensor_id=sensor.sensor_id,
                sensor_name=sensor.display_name,
                timestamp=now + timedelta(seconds=ahead),
                temperature=value,
                predicted_temperature=value,
                alarm_triggered=True,
                alarm_message=message,
                storage_tier=StorageTier.PREDICTED,
            ))
            if self.exporter is not None:
                await self.exporter.push(alarm)
            # Only the earliest crossing is reported
            return alarm
        return None

    async def check_all(self) -> List[Reading]:
        alarms = []
        for sensor in self.sensors:
            try:
                alarm = await self.check_sensor(sensor)
            except Exception:
                logger.error(f"Trend check failed for {sensor.sensor_id}: {traceback.format_exc()}")
                continue
            if alarm is not None:
                alarms.append(alarm)
        return alarms

    async def run(self) -> None:
        self.is_running = True
        logger.info(f"Trend monitor started (every {self.settings.check_interval_s}s)")
        while self.is_running:
            await asyncio.sleep(self.settings.check_interval_s)
            await self.check_all()

    def stop(self) -> None:
        self.is_running = False
