"""
Tiered retention.

Raw REALTIME rows are folded into per-minute MINUTELY aggregates, those
into per-hour HOURLY aggregates, and rows that age past their tier's
horizon are purged once they have been exported.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
import asyncio
import traceback

from ..models.sensor import MEASUREMENTS
from ..models.settings import RetentionSettings
from ..models.things import Reading, StorageTier
from ..storage.readings_db import ReadingRepository
from ..utils.helpers import bucket_end, bucket_start, utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TierPolicy:
    """
    How one tier is folded into the next.

    Source rows older than `aggregate_after` (and younger than
    `keep_target_for`, the target tier's own horizon) are grouped into
    `bucket_seconds` wide UTC buckets.
    """
    source: StorageTier
    target: StorageTier
    bucket_seconds: int
    aggregate_after: timedelta
    keep_target_for: timedelta

    def __post_init__(self):
        if not self.source.can_advance_to(self.target):
            raise ValueError(f"Cannot compact {self.source.value} into {self.target.value}")
        if self.bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")


@dataclass
class CompactionResult:
    source: StorageTier
    target: StorageTier
    aggregates_created: int = 0
    buckets_skipped: int = 0
    sources_deleted: int = 0
    sources_retained: int = 0


def default_policies(retention: RetentionSettings) -> List[TierPolicy]:
    return [
        TierPolicy(
            source=StorageTier.REALTIME,
            target=StorageTier.MINUTELY,
            bucket_seconds=60,
            aggregate_after=timedelta(minutes=retention.realtime_minutes),
            keep_target_for=timedelta(hours=retention.minutely_hours),
        ),
        TierPolicy(
            source=StorageTier.MINUTELY,
            target=StorageTier.HOURLY,
            bucket_seconds=3600,
            aggregate_after=timedelta(hours=retention.minutely_hours),
            keep_target_for=timedelta(days=retention.hourly_days),
        ),
    ]


def group_by_bucket(readings: Iterable[Reading],
                    bucket_seconds: int) -> Dict[Tuple[str, datetime], List[Reading]]:
    """Group readings by (sensor_id, bucket start), keeping first-seen order."""
    groups: Dict[Tuple[str, datetime], List[Reading]] = {}
    for reading in readings:
        key = (reading.sensor_id, bucket_start(reading.timestamp, bucket_seconds))
        groups.setdefault(key, []).append(reading)
    return groups


def _mean(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def average_readings(readings: List[Reading], timestamp: datetime, tier: StorageTier) -> Reading:
    """
    One reading holding the mean of each measurement. A measurement no
    source row carries stays unset rather than becoming zero.
    """
    first = readings[0]
    means = {
        name: _mean([getattr(r, name) for r in readings if getattr(r, name) is not None])
        for name in MEASUREMENTS
    }
    return Reading(
        device_id=first.device_id,
        sensor_id=first.sensor_id,
        sensor_name=first.sensor_name,
        timestamp=timestamp,
        storage_tier=tier,
        alarm_triggered=False,
        is_exported=False,
        **means,
    )


def downsample(readings: Iterable[Reading], step_seconds: int = 5) -> List[Reading]:
    """
    Average readings into `step_seconds` buckets, oldest first.
    Nothing is persisted; used to shape history for trend prediction.
    """
    groups = group_by_bucket(readings, step_seconds)
    points = [
        average_readings(rows, start, rows[0].storage_tier)
        for (_, start), rows in groups.items()
    ]
    points.sort(key=lambda r: (r.sensor_id, r.timestamp))
    return points


class CompactionEngine:
    """
    Periodic aggregation and purge over the readings table.

    A pass handles each tier pair inside one transaction: aggregates are
    written and their sources deleted together or not at all. An
    aggregate that already exists for a bucket is never written twice.
    Source rows that are not exported yet stay in place until a later
    pass, after the sweep has delivered them; unexported rows are never
    deleted.
    """
    def __init__(self, repository: ReadingRepository, retention: RetentionSettings,
                 policies: Optional[List[TierPolicy]] = None):
        self.repository = repository
        self.retention = retention
        self.policies = policies if policies is not None else default_policies(retention)
        self.interval = retention.compaction_interval_s
        self.is_running = False
        self._pass_lock = asyncio.Lock()

    async def compact_tier(self, source: StorageTier, target: StorageTier, bucket_seconds: int,
                           aggregate_before: datetime, not_before: datetime) -> CompactionResult:
        """
        Fold `source` rows with not_before <= timestamp < aggregate_before
        into `target` aggregates.

        `aggregate_before` is rounded down to a bucket boundary so only
        complete buckets are aggregated.
        """
        if not source.can_advance_to(target):
            raise ValueError(f"Cannot compact {source.value} into {target.value}")

        result = CompactionResult(source=source, target=target)
        cutoff = bucket_start(aggregate_before, bucket_seconds)
        if cutoff <= not_before:
            return result

        async with self.repository.transaction() as conn:
            rows = await self.repository.find_range(not_before, cutoff, source, conn=conn)
            if not rows:
                return result

            to_delete: List[int] = []
            for (sensor_id, start), bucket in group_by_bucket(rows, bucket_seconds).items():
                end = bucket_end(start, bucket_seconds)
                if await self.repository.exists_in_range(sensor_id, start, end, target, conn=conn):
                    logger.debug(f"{target.value} aggregate for {sensor_id} at {start} already exists")
                    result.buckets_skipped += 1
                else:
                    aggregate = average_readings(bucket, start, target)
                    await self.repository.insert(aggregate, conn=conn)
                    result.aggregates_created += 1

                for reading in bucket:
                    if reading.is_exported:
                        to_delete.append(reading.id)
                    else:
                        result.sources_retained += 1

            result.sources_deleted = await self.repository.delete_ids(to_delete, conn=conn)

        if result.aggregates_created or result.sources_deleted:
            logger.info(
                f"Compacted {source.value} -> {target.value}: {result.aggregates_created} aggregates created, "
                f"{result.sources_deleted} source rows deleted, {result.buckets_skipped} buckets already done"
            )
        if result.sources_retained:
            logger.info(f"{result.sources_retained} {source.value} rows kept until exported")
        return result

    async def purge(self, tier: StorageTier, before: datetime) -> int:
        """
        Delete exported rows of `tier` older than `before`. Older rows that
        are still unexported are kept and reported as export backlog.
        """
        async with self.repository.transaction() as conn:
            deleted = await self.repository.delete_exported_before(before, tier, conn=conn)
            backlog = await self.repository.count_unexported_before(before, tier, conn=conn)

        if deleted:
            logger.info(f"Purged {deleted} exported {tier.value} rows older than {before}")
        if backlog:
            logger.warning(
                f"{backlog} {tier.value} rows older than {before} are not exported yet "
                f"and were kept. Check the export pipeline!"
            )
        return deleted

    def purge_horizons(self, now: datetime) -> List[Tuple[StorageTier, datetime]]:
        """Tier and cutoff for every purge step of a pass at `now`."""
        horizons = [
            (policy.source, bucket_start(now - policy.aggregate_after, policy.bucket_seconds))
            for policy in self.policies
        ]
        horizons.append((StorageTier.HOURLY, now - timedelta(days=self.retention.hourly_days)))
        horizons.append((StorageTier.PREDICTED, now - timedelta(minutes=self.retention.realtime_minutes)))
        return horizons

    async def run_pass(self, now: Optional[datetime] = None) -> Optional[List[CompactionResult]]:
        """
        One full pass: every tier pair in order, then the purge steps.
        Returns None without doing anything if a pass is already running.
        """
        if self._pass_lock.locked():
            logger.warning("Previous compaction pass still running, skipping")
            return None

        async with self._pass_lock:
            now = now or utcnow()
            results = []
            for policy in self.policies:
                results.append(await self.compact_tier(
                    policy.source,
                    policy.target,
                    policy.bucket_seconds,
                    aggregate_before=now - policy.aggregate_after,
                    not_before=now - policy.keep_target_for,
                ))
            for tier, before in self.purge_horizons(now):
                await self.purge(tier, before)
            return results

    async def run(self) -> None:
        """Compaction loop"""
        self.is_running = True
        logger.info(f"Compaction started (every {self.interval}s)")
        while self.is_running:
            await asyncio.sleep(self.interval)
            try:
                await self.run_pass()
            except Exception:
                # The transaction rolled back; the next pass retries the same rows
                logger.error(f"Compaction pass failed: {traceback.format_exc()}")

    def stop(self) -> None:
        self.is_running = False
