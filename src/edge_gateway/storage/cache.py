# Latest reading per sensor

from typing import Dict, Iterable, List, Optional
import threading

from ..models.things import Reading
from ..utils.logging import get_logger

logger = get_logger(__name__)


class LatestReadingCache:
    """
    Most recent reading per sensor, for low-latency reads.

    Only the owning sensor's polling and enrichment flow writes an entry.
    The database stays the system of record: this is never consulted for
    compaction or export, and `rebuild` restores it from storage.
    """
    def __init__(self):
        self._entries: Dict[str, Reading] = {}
        self._lock = threading.Lock()

    def get(self, sensor_id: str) -> Optional[Reading]:
        with self._lock:
            return self._entries.get(sensor_id)

    def set(self, reading: Reading) -> bool:
        """
        Store `reading` unless a newer one is already cached.
        Enrichment can finish out of order, so age decides, not arrival.
        """
        with self._lock:
            current = self._entries.get(reading.sensor_id)
            if current is not None and current.timestamp > reading.timestamp:
                return False
            self._entries[reading.sensor_id] = reading
            return True

    def snapshot(self) -> List[Reading]:
        with self._lock:
            return list(self._entries.values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_size(self) -> int:
        with self._lock:
            return len(self._entries)

    async def rebuild(self, repository, sensor_ids: Iterable[str]) -> int:
        """Reload the newest persisted reading of each sensor."""
        self.clear()
        loaded = 0
        for sensor_id in sensor_ids:
            reading = await repository.latest_for_sensor(sensor_id)
            if reading is not None:
                self.set(reading)
                loaded += 1
        logger.info(f"Latest reading cache rebuilt with {loaded} sensors")
        return loaded
