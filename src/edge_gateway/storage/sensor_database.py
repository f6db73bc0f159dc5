from ..storage.database import ConnectionPool
from ..storage.readings_db import ReadingRepository
from ..utils.logging import get_logger
from ..utils.exceptions import DatabaseError

logger = get_logger(__name__)


class SensorDatabase:
    """Main database manager class"""
    def __init__(self, db_path: str, max_connections: int = 5):
        self.pool = ConnectionPool(db_path, max_connections)
        self.readings = ReadingRepository(self.pool)

    async def initialize(self) -> None:
        """Initialize the database and the readings table"""
        try:
            await self.pool.initialize()
            await self.readings.create_table()
            await self.readings.create_indices()
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise DatabaseError(f"Failed to initialize database: {e}")
        logger.info(f"Database ready at {self.pool.db_path}")

    async def close(self) -> None:
        """Close all database connections"""
        logger.info("Shutting down database...")
        await self.pool.close()
        logger.info("Database connections closed")
