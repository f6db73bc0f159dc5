from typing import Dict, Iterable, Optional
import asyncio
import traceback

from pydantic import ValidationError

from ..adapters.rest import RestAPIAdapter
from ..models.remote import AlarmThresholds, EdgeConfig
from ..models.settings import ConfigSyncSettings
from ..utils.exceptions import CommunicationError, ConfigurationError
from ..utils.logging import get_logger
from .alarm import AlarmEvaluator
from .export import ExportPipeline
from .polling import PollingService

logger = get_logger(__name__)


class ConfigSync:
    """
    Pulls this device's runtime configuration from the remote backend and
    applies it: global and per-sensor alarm thresholds, per-sensor poll
    intervals and the export batch schedule.

    A failed or unusable fetch changes nothing, so the last good
    configuration stays in force until the next successful one.
    """
    def __init__(self, settings: ConfigSyncSettings, device_id: str, rest: RestAPIAdapter,
                 alarms: AlarmEvaluator, polling: Optional[PollingService] = None,
                 exporter: Optional[ExportPipeline] = None,
                 sensor_ids: Optional[Iterable[str]] = None):
        self.settings = settings
        self.device_id = device_id
        self.rest = rest
        self.alarms = alarms
        self.polling = polling
        self.exporter = exporter
        if sensor_ids is None:
            sensor_ids = [s.sensor_id for s in polling.sensors] if polling else []
        self.sensor_ids = list(sensor_ids)
        self.current_config: Optional[EdgeConfig] = None
        self.is_running = False

    @property
    def url(self) -> str:
        return self.settings.url.replace("{device_id}", self.device_id)

    async def fetch(self) -> EdgeConfig:
        body = await self.rest.get(self.url, timeout=self.settings.timeout_s)
        if not isinstance(body, dict) or not body:
            raise ConfigurationError(f"Remote config for {self.device_id} is empty or not an object")
        try:
            return EdgeConfig.model_validate(body)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid remote config: {e}") from e

    def apply(self, config: EdgeConfig) -> None:
        known = set(self.sensor_ids)
        sensor_thresholds: Dict[str, AlarmThresholds] = {}
        intervals: Dict[str, int] = {}

        for runtime in config.sensor_configs or []:
            if runtime.sensor_id not in known:
                logger.debug(f"Ignoring remote config for unknown sensor {runtime.sensor_id}")
                continue
            if runtime.alarm_thresholds is not None:
                sensor_thresholds[runtime.sensor_id] = runtime.alarm_thresholds
            if runtime.poll_interval_ms is not None:
                intervals[runtime.sensor_id] = runtime.poll_interval_ms

        self.alarms.replace_all(config.alarm_thresholds, sensor_thresholds)

        if self.polling is not None:
            self.polling.replace_intervals(intervals)

        schedule = config.upload_schedule
        if self.exporter is not None and schedule is not None:
            if schedule.batch_size is not None:
                self.exporter.set_batch_size(schedule.batch_size)
            if schedule.interval_ms is not None:
                self.exporter.set_interval(schedule.interval_ms / 1000.0)

        self.current_config = config
        logger.info(
            f"Applied remote config (last updated {config.last_updated}): "
            f"{len(sensor_thresholds)} sensor threshold overrides, {len(intervals)} interval overrides"
        )

    async def sync(self) -> bool:
        """Fetch and apply once. Returns False when the last good config was kept."""
        try:
            config = await self.fetch()
        except (CommunicationError, ConfigurationError) as e:
            logger.warning(f"Config sync failed, keeping current configuration: {e}")
            return False
        self.apply(config)
        return True

    async def run(self) -> None:
        """Sync now, then after every interval"""
        self.is_running = True
        while self.is_running:
            try:
                await self.sync()
            except Exception:
                logger.error(f"Error in config sync loop: {traceback.format_exc()}")
            await asyncio.sleep(self.settings.interval_s)

    def stop(self) -> None:
        self.is_running = False
