from typing import Optional
import aiosqlite
import asyncio
from contextlib import asynccontextmanager

from ..utils.logging import get_logger
from ..utils.exceptions import ConnectionPoolError


logger = get_logger(__name__)


class ConnectionPool:
    """Manages a pool of database connections"""
    def __init__(self, db_path: str, max_connections: int = 5, acquire_timeout: float = 5.0):
        self.db_path = db_path
        self.max_connections = max_connections
        self.acquire_timeout = acquire_timeout
        self._pool: asyncio.Queue = asyncio.Queue(maxsize=max_connections)
        self._active_connections = 0
        self._lock = asyncio.Lock()

    async def _connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path)
        await conn.execute('PRAGMA journal_mode=WAL')
        await conn.execute('PRAGMA busy_timeout=5000')
        return conn

    async def initialize(self):
        """Initialize the connection pool"""
        logger.info(f"Initializing connection pool with {self.max_connections} connections")
        try:
            for _ in range(self.max_connections):
                conn = await self._connect()
                await self._pool.put(conn)
                self._active_connections += 1
        except Exception as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        connection: Optional[aiosqlite.Connection] = None
        try:
            async with self._lock:
                if self._pool.empty() and self._active_connections < self.max_connections:
                    # Create new connection if pool is empty and we haven't reached max
                    connection = await self._connect()
                    self._active_connections += 1

            if connection is None:
                # Wait for available connection with timeout
                try:
                    connection = await asyncio.wait_for(self._pool.get(), timeout=self.acquire_timeout)
                except asyncio.TimeoutError:
                    raise ConnectionPoolError("Timeout waiting for database connection")

            yield connection

        finally:
            if connection:
                try:
                    if connection.in_transaction:
                        await connection.rollback()
                    self._pool.put_nowait(connection)
                except Exception as e:
                    logger.error(f"Error returning connection to pool: {e}")
                    # If we can't return to pool, close it so a new one gets created
                    await connection.close()
                    async with self._lock:
                        self._active_connections -= 1

    async def close(self):
        """Close all connections in the pool"""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._active_connections = 0
