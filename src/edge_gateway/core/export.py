from typing import Dict, List, Optional
import asyncio
import traceback

from ..adapters.rest import RestAPIAdapter
from ..models.settings import ExportSettings
from ..models.things import Reading, StorageTier
from ..storage.readings_db import ReadingRepository
from ..storage.sync_manager import ExportTracker
from ..utils.exceptions import CommunicationError, DatabaseError
from ..utils.logging import get_logger

logger = get_logger(__name__)

SWEEP_TIERS = (StorageTier.REALTIME, StorageTier.MINUTELY, StorageTier.HOURLY)


class ExportPipeline:
    """
    Forwards readings to the remote store.

    `push` is the fast path for one freshly enriched reading; `sweep` is
    the periodic batch of everything still unexported. Both claim row ids
    in the shared tracker first, so one row is never in two requests at
    the same time. A failed request changes nothing: the rows stay
    unexported and the next sweep picks them up.
    """
    def __init__(self, settings: ExportSettings, repository: ReadingRepository,
                 rest: RestAPIAdapter, tracker: Optional[ExportTracker] = None):
        self.settings = settings
        self.repository = repository
        self.rest = rest
        self.tracker = tracker or ExportTracker()
        self.batch_size = settings.batch_size
        self.interval = settings.batch_interval_s
        self.is_running = False
        self._sweep_lock = asyncio.Lock()

    @property
    def batch_url(self) -> str:
        return self.settings.url.rstrip('/') + self.settings.batch_path

    def set_batch_size(self, batch_size: int) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size

    def set_interval(self, interval_s: float) -> None:
        if interval_s <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval_s

    async def push(self, reading: Reading) -> bool:
        """Try once to export a single reading. Returns True when it was accepted."""
        if reading.id is None:
            raise ValueError("Only persisted readings can be exported")
        if reading.is_exported:
            return True

        claimed = await self.tracker.claim([reading.id])
        if not claimed:
            logger.debug(f"Reading {reading.id} already being exported, skipping fast path")
            return False
        try:
            stored = await self.repository.get(reading.id)
            # Only exported rows are ever deleted
            if stored is None or stored.is_exported:
                logger.debug(f"Reading {reading.id} was exported meanwhile, skipping fast path")
                return True
            await self.rest.post(self.settings.url, reading.export_payload(), timeout=self.settings.timeout_s)
            await self.repository.mark_exported([reading.id])
            logger.debug(f"Exported reading {reading.id} of sensor {reading.sensor_id}")
            return True
        except CommunicationError as e:
            logger.warning(f"Fast path export failed for reading {reading.id} of {reading.sensor_id}: {e}")
            return False
        except DatabaseError as e:
            logger.error(f"Exported reading {reading.id} but could not flag it: {e}")
            return False
        finally:
            await self.tracker.release(claimed)

    async def collect_pending(self) -> List[Reading]:
        """
        Unexported readings for the next batch, alarms first, de-duplicated
        by id and capped at the batch size. Rows claimed by an in-flight
        fast path are left out.
        """
        limit = self.batch_size
        candidates: List[Reading] = []
        candidates.extend(await self.repository.find_unexported_alarms(limit=limit))
        for tier in SWEEP_TIERS:
            candidates.extend(await self.repository.find_unexported(tier, limit=limit))

        pending: Dict[int, Reading] = {}
        for reading in candidates:
            if reading.id in pending or self.tracker.in_progress(reading.id):
                continue
            pending[reading.id] = reading
            if len(pending) >= limit:
                break
        return list(pending.values())

    async def sweep(self) -> int:
        """
        Submit one batch of pending readings. Returns the number flagged
        as exported; 0 when there was nothing to do, the request failed or
        another sweep was already running.
        """
        if self._sweep_lock.locked():
            logger.debug("Export sweep already running, skipping")
            return 0

        async with self._sweep_lock:
            pending = await self.collect_pending()
            if not pending:
                logger.debug("No readings pending export")
                return 0

            claimed = await self.tracker.claim([r.id for r in pending])
            claimed_ids = set(claimed)
            batch = [r for r in pending if r.id in claimed_ids]
            if not batch:
                return 0

            try:
                await self.rest.post(
                    self.batch_url,
                    [r.export_payload() for r in batch],
                    timeout=self.settings.timeout_s,
                )
            except CommunicationError as e:
                logger.warning(f"Batch export of {len(batch)} readings failed, will retry next sweep: {e}")
                await self.tracker.release(claimed)
                return 0

            try:
                updated = await self.repository.mark_exported(claimed)
            finally:
                await self.tracker.release(claimed)
            logger.info(f"Exported batch of {len(batch)} readings ({updated} flagged)")
            return updated

    async def run(self) -> None:
        """Periodic sweep loop"""
        self.is_running = True
        logger.info(f"Export sweep started (every {self.interval}s, batch size {self.batch_size})")
        while self.is_running:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.error(f"Error in export sweep: {traceback.format_exc()}")

    def stop(self) -> None:
        self.is_running = False
