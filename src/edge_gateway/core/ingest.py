from datetime import datetime
from typing import List, Mapping, Optional
import asyncio
import traceback

from ..models.sensor import SensorDefinition
from ..models.things import Reading, StorageTier
from ..storage.cache import LatestReadingCache
from ..storage.readings_db import ReadingRepository
from ..utils.exceptions import DatabaseError
from ..utils.helpers import utcnow
from ..utils.logging import get_logger
from .alarm import AlarmEvaluator
from .export import ExportPipeline
from .prediction import PredictionClient

logger = get_logger(__name__)


class EnrichmentPool:
    """
    Bounded worker pool for post-sample work: point prediction, alarm
    evaluation, saving both onto the row and the export fast path.

    Polling only ever calls `submit`, which never waits. When the queue is
    full the reading is left unenriched; it is already persisted and the
    export sweep still delivers it.
    """
    def __init__(self, prediction: PredictionClient, alarms: AlarmEvaluator,
                 repository: ReadingRepository, cache: LatestReadingCache,
                 exporter: Optional[ExportPipeline] = None,
                 workers: int = 5, queue_size: int = 25):
        self.prediction = prediction
        self.alarms = alarms
        self.repository = repository
        self.cache = cache
        self.exporter = exporter
        self.worker_count = workers
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"enrichment-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Enrichment pool started with {self.worker_count} workers")

    def submit(self, reading: Reading) -> bool:
        try:
            self.queue.put_nowait(reading)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"Enrichment queue full, reading {reading.id} of {reading.sensor_id} "
                f"left for the export sweep"
            )
            return False

    async def enrich(self, reading: Reading) -> Reading:
        """Attach prediction and alarm fields, save them, then try the fast path."""
        try:
            predicted = await self.prediction.predict_point(
                reading.temperature, reading.humidity, reading.pressure
            )
        except Exception as e:
            logger.warning(f"Prediction failed for {reading.sensor_id}: {e}")
            predicted = None

        triggered, message = self.alarms.evaluate(
            reading.sensor_id, reading.temperature, predicted, reading.sensor_name
        )
        if triggered:
            logger.warning(message)

        enriched = reading.model_copy(update={
            'predicted_temperature': predicted,
            'alarm_triggered': triggered,
            'alarm_message': message,
        })
        await self.repository.update_enrichment(enriched)
        self.cache.set(enriched)

        if self.exporter is not None:
            if await self.exporter.push(enriched):
                enriched = enriched.model_copy(update={'is_exported': True})
                self.cache.set(enriched)
        return enriched

    async def _worker(self, index: int) -> None:
        while True:
            reading = await self.queue.get()
            try:
                await self.enrich(reading)
            except DatabaseError as e:
                logger.error(f"Could not save enrichment for reading {reading.id}: {e}")
            except Exception:
                logger.error(f"Enrichment worker {index} failed: {traceback.format_exc()}")
            finally:
                self.queue.task_done()

    async def join(self) -> None:
        """Wait until everything submitted so far has been processed."""
        await self.queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Enrichment pool stopped")


class SampleIngestor:
    """Turns decoded measurements into a persisted REALTIME reading."""
    def __init__(self, device_id: str, repository: ReadingRepository,
                 cache: LatestReadingCache, enrichment: Optional[EnrichmentPool] = None):
        self.device_id = device_id
        self.repository = repository
        self.cache = cache
        self.enrichment = enrichment

    async def ingest(self, sensor: SensorDefinition, values: Mapping[str, Optional[float]],
                     timestamp: Optional[datetime] = None) -> Optional[Reading]:
        """
        Persist one sample and hand it to enrichment.

        Returns None without storing anything when the sample has no
        temperature.
        """
        if values.get('temperature') is None:
            logger.warning(f"Sample of {sensor.sensor_id} has no temperature, discarded")
            return None

        reading = Reading(
            device_id=self.device_id,
            sensor_id=sensor.sensor_id,
            sensor_name=sensor.display_name,
            timestamp=timestamp or utcnow(),
            temperature=values.get('temperature'),
            humidity=values.get('humidity'),
            pressure=values.get('pressure'),
            storage_tier=StorageTier.REALTIME,
        )
        stored = await self.repository.insert(reading)
        self.cache.set(stored)
        logger.debug(
            f"Stored reading {stored.id} of {sensor.sensor_id}: "
            f"T={stored.temperature} H={stored.humidity} P={stored.pressure}"
        )

        if self.enrichment is not None:
            self.enrichment.submit(stored)
        return stored
