from typing import Any, Dict, Iterable, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime
import aiosqlite

from .database import ConnectionPool
from ..models.things import Reading, StorageTier
from ..utils.exceptions import DatabaseError
from ..utils.helpers import to_db_time, from_db_time
from ..utils.logging import get_logger

logger = get_logger(__name__)

# SQLite's default limit on host parameters is 999
_DELETE_CHUNK = 500

_COLUMNS = (
    'device_id', 'sensor_id', 'sensor_name', 'timestamp', 'temperature', 'humidity',
    'pressure', 'predicted_temperature', 'alarm_triggered', 'alarm_message',
    'is_exported', 'storage_tier'
)


class ReadingRepository:
    """
    The one table of readings.

    Every method takes an optional `conn`. Without it the call runs on its
    own pooled connection and commits; with it the call joins the caller's
    transaction (see `transaction`).
    """
    def __init__(self, pool: ConnectionPool):
        self.pool = pool
        self.table_name = "sensor_readings"

    async def create_table(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS sensor_readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    sensor_id TEXT NOT NULL,
                    sensor_name TEXT,
                    timestamp TEXT NOT NULL,
                    temperature REAL,
                    humidity REAL,
                    pressure REAL,
                    predicted_temperature REAL,
                    alarm_triggered BOOLEAN NOT NULL DEFAULT 0,
                    alarm_message TEXT,
                    is_exported BOOLEAN NOT NULL DEFAULT 0,
                    storage_tier TEXT NOT NULL,
                    CONSTRAINT valid_tier CHECK (
                        storage_tier IN ('REALTIME', 'MINUTELY', 'HOURLY', 'PREDICTED')
                    )
                )
            ''')
            await conn.commit()

    async def create_indices(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_readings_sensor_time
                ON sensor_readings(sensor_id, timestamp)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_readings_tier_time
                ON sensor_readings(storage_tier, timestamp)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_readings_export
                ON sensor_readings(is_exported)
            ''')
            await conn.commit()

    @asynccontextmanager
    async def _connection(self, conn: Optional[aiosqlite.Connection] = None):
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as own:
            yield own
            await own.commit()

    @asynccontextmanager
    async def transaction(self):
        """One connection, committed on success and rolled back on any error."""
        async with self.pool.acquire() as conn:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    def _row_to_reading(self, row: Dict[str, Any]) -> Reading:
        return Reading(
            id=row['id'],
            device_id=row['device_id'],
            sensor_id=row['sensor_id'],
            sensor_name=row['sensor_name'],
            timestamp=from_db_time(row['timestamp']),
            temperature=row['temperature'],
            humidity=row['humidity'],
            pressure=row['pressure'],
            predicted_temperature=row['predicted_temperature'],
            alarm_triggered=bool(row['alarm_triggered']),
            alarm_message=row['alarm_message'],
            is_exported=bool(row['is_exported']),
            storage_tier=StorageTier(row['storage_tier']),
        )

    async def _select(self, where: str, params: Iterable[Any], order: str = 'timestamp ASC',
                      limit: Optional[int] = None,
                      conn: Optional[aiosqlite.Connection] = None) -> List[Reading]:
        query = f'SELECT * FROM {self.table_name} WHERE {where} ORDER BY {order}, id ASC'
        params = list(params)
        if limit is not None:
            query += ' LIMIT ?'
            params.append(limit)
        try:
            async with self._connection(conn) as c:
                c.row_factory = aiosqlite.Row
                async with c.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
                    return [self._row_to_reading(dict(row)) for row in rows]
        except aiosqlite.Error as e:
            logger.error(f"Failed to query {self.table_name}: {e}")
            raise DatabaseError(f"Failed to query readings: {e}")

    async def insert(self, reading: Reading, conn: Optional[aiosqlite.Connection] = None) -> Reading:
        """Store a reading and return it with its new id."""
        values = (
            reading.device_id,
            reading.sensor_id,
            reading.sensor_name,
            to_db_time(reading.timestamp),
            reading.temperature,
            reading.humidity,
            reading.pressure,
            reading.predicted_temperature,
            reading.alarm_triggered,
            reading.alarm_message,
            reading.is_exported,
            reading.storage_tier.value,
        )
        placeholders = ', '.join('?' for _ in _COLUMNS)
        try:
            async with self._connection(conn) as c:
                cursor = await c.execute(
                    f'INSERT INTO {self.table_name} ({", ".join(_COLUMNS)}) VALUES ({placeholders})',
                    values
                )
                return reading.model_copy(update={'id': cursor.lastrowid})
        except aiosqlite.Error as e:
            logger.error(f"Failed to store reading for {reading.sensor_id}: {e}")
            raise DatabaseError(f"Failed to store reading: {e}")

    async def update_enrichment(self, reading: Reading, conn: Optional[aiosqlite.Connection] = None) -> None:
        """Attach prediction and alarm fields to an existing row."""
        if reading.id is None:
            raise ValueError("Cannot update a reading without an id")
        try:
            async with self._connection(conn) as c:
                await c.execute(f'''
                    UPDATE {self.table_name}
                    SET predicted_temperature = ?, alarm_triggered = ?, alarm_message = ?
                    WHERE id = ?
                ''', (reading.predicted_temperature, reading.alarm_triggered,
                      reading.alarm_message, reading.id))
        except aiosqlite.Error as e:
            logger.error(f"Failed to update reading {reading.id}: {e}")
            raise DatabaseError(f"Failed to update reading: {e}")

    async def mark_exported(self, ids: Iterable[int], conn: Optional[aiosqlite.Connection] = None) -> int:
        """Flip the export flag for exactly these rows. Rows already gone are ignored."""
        ids = list(ids)
        if not ids:
            return 0
        updated = 0
        try:
            async with self._connection(conn) as c:
                for start in range(0, len(ids), _DELETE_CHUNK):
                    chunk = ids[start:start + _DELETE_CHUNK]
                    placeholders = ','.join('?' for _ in chunk)
                    cursor = await c.execute(
                        f'UPDATE {self.table_name} SET is_exported = 1 WHERE id IN ({placeholders})',
                        chunk
                    )
                    updated += cursor.rowcount
            logger.debug(f"Marked {updated} readings as exported")
            return updated
        except aiosqlite.Error as e:
            logger.error(f"Failed to mark readings as exported: {e}")
            raise DatabaseError(f"Failed to mark readings as exported: {e}")

    async def get(self, reading_id: int, conn: Optional[aiosqlite.Connection] = None) -> Optional[Reading]:
        rows = await self._select('id = ?', [reading_id], conn=conn)
        return rows[0] if rows else None

    async def find_range(self, start: datetime, end: datetime, tier: StorageTier,
                         sensor_id: Optional[str] = None, limit: Optional[int] = None,
                         conn: Optional[aiosqlite.Connection] = None) -> List[Reading]:
        """Rows of `tier` with start <= timestamp < end, oldest first."""
        where = 'storage_tier = ? AND timestamp >= ? AND timestamp < ?'
        params: List[Any] = [tier.value, to_db_time(start), to_db_time(end)]
        if sensor_id is not None:
            where += ' AND sensor_id = ?'
            params.append(sensor_id)
        return await self._select(where, params, limit=limit, conn=conn)

    async def exists_in_range(self, sensor_id: str, start: datetime, end: datetime, tier: StorageTier,
                              conn: Optional[aiosqlite.Connection] = None) -> bool:
        try:
            async with self._connection(conn) as c:
                async with c.execute(f'''
                    SELECT 1 FROM {self.table_name}
                    WHERE sensor_id = ? AND storage_tier = ? AND timestamp >= ? AND timestamp < ?
                    LIMIT 1
                ''', (sensor_id, tier.value, to_db_time(start), to_db_time(end))) as cursor:
                    return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to check for existing aggregate: {e}")

    async def find_unexported(self, tier: Optional[StorageTier] = None, limit: Optional[int] = None,
                              conn: Optional[aiosqlite.Connection] = None) -> List[Reading]:
        if tier is None:
            return await self._select('is_exported = 0', [], limit=limit, conn=conn)
        return await self._select('is_exported = 0 AND storage_tier = ?', [tier.value],
                                  limit=limit, conn=conn)

    async def find_unexported_alarms(self, limit: Optional[int] = None,
                                     conn: Optional[aiosqlite.Connection] = None) -> List[Reading]:
        return await self._select('is_exported = 0 AND alarm_triggered = 1', [],
                                  limit=limit, conn=conn)

    async def find_alarms(self, limit: Optional[int] = None, sensor_id: Optional[str] = None,
                          conn: Optional[aiosqlite.Connection] = None) -> List[Reading]:
        """Alarm rows, newest first, optionally of one sensor."""
        if sensor_id is None:
            return await self._select('alarm_triggered = 1', [], order='timestamp DESC',
                                      limit=limit, conn=conn)
        return await self._select('alarm_triggered = 1 AND sensor_id = ?', [sensor_id],
                                  order='timestamp DESC', limit=limit, conn=conn)

    async def latest_for_sensor(self, sensor_id: str, tier: StorageTier = StorageTier.REALTIME,
                                conn: Optional[aiosqlite.Connection] = None) -> Optional[Reading]:
        rows = await self._select('sensor_id = ? AND storage_tier = ?', [sensor_id, tier.value],
                                  order='timestamp DESC', limit=1, conn=conn)
        return rows[0] if rows else None

    async def count_unexported_before(self, before: datetime, tier: StorageTier,
                                      conn: Optional[aiosqlite.Connection] = None) -> int:
        try:
            async with self._connection(conn) as c:
                async with c.execute(f'''
                    SELECT COUNT(*) FROM {self.table_name}
                    WHERE is_exported = 0 AND storage_tier = ? AND timestamp < ?
                ''', (tier.value, to_db_time(before))) as cursor:
                    (count,) = await cursor.fetchone()
                    return count
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count pending readings: {e}")

    async def delete_exported_before(self, before: datetime, tier: StorageTier,
                                     conn: Optional[aiosqlite.Connection] = None) -> int:
        """Bulk delete rows of `tier` older than `before`. Unexported rows are never touched."""
        try:
            async with self._connection(conn) as c:
                cursor = await c.execute(f'''
                    DELETE FROM {self.table_name}
                    WHERE is_exported = 1 AND storage_tier = ? AND timestamp < ?
                ''', (tier.value, to_db_time(before)))
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error(f"Failed to purge {tier.value} readings: {e}")
            raise DatabaseError(f"Failed to purge readings: {e}")

    async def delete_ids(self, ids: Iterable[int], conn: Optional[aiosqlite.Connection] = None) -> int:
        ids = list(ids)
        if not ids:
            return 0
        deleted = 0
        try:
            async with self._connection(conn) as c:
                for start in range(0, len(ids), _DELETE_CHUNK):
                    chunk = ids[start:start + _DELETE_CHUNK]
                    placeholders = ','.join('?' for _ in chunk)
                    cursor = await c.execute(
                        f'DELETE FROM {self.table_name} WHERE id IN ({placeholders})', chunk
                    )
                    deleted += cursor.rowcount
            return deleted
        except aiosqlite.Error as e:
            logger.error(f"Failed to delete readings: {e}")
            raise DatabaseError(f"Failed to delete readings: {e}")
