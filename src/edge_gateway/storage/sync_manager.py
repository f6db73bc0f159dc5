import asyncio
from typing import Iterable, List, Set

from ..utils.logging import get_logger


logger = get_logger(__name__)


class ExportTracker:
    """
    Tracks which readings are being exported right now.

    The single-record fast path and the batched sweep both claim row ids
    before sending and release them afterwards, so the same row is never
    in two requests at once. Claims live in memory only.
    """
    def __init__(self):
        self._in_progress: Set[int] = set()
        self._lock = asyncio.Lock()

    async def claim(self, reading_ids: Iterable[int]) -> List[int]:
        """Claim every id not already in flight. Returns the ids claimed, in order."""
        claimed = []
        async with self._lock:
            for reading_id in reading_ids:
                if reading_id in self._in_progress:
                    logger.debug(f"Export already in progress for reading {reading_id}")
                    continue
                self._in_progress.add(reading_id)
                claimed.append(reading_id)
        return claimed

    async def release(self, reading_ids: Iterable[int]) -> None:
        async with self._lock:
            for reading_id in reading_ids:
                self._in_progress.discard(reading_id)

    def in_progress(self, reading_id: int) -> bool:
        return reading_id in self._in_progress

    def get_size(self) -> int:
        return len(self._in_progress)
