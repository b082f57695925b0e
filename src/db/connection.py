"""Async PostgreSQL pool shared by the gamification store"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from src.config import DATABASE_URL, DB_POOL_MIN_SIZE, DB_POOL_MAX_SIZE
from src.exceptions import ConnectionError

logger = logging.getLogger(__name__)


class Database:
    """
    Owns one AsyncConnectionPool.

    main.py opens it before a rollover job and closes it afterwards; the
    Postgres store borrows connections through connection().
    """

    def __init__(
        self,
        connection_string: str = DATABASE_URL,
        min_size: int = DB_POOL_MIN_SIZE,
        max_size: int = DB_POOL_MAX_SIZE,
    ):
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def init_pool(self) -> None:
        """Open the pool; a second call is a no-op"""
        if self._pool is not None:
            return

        logger.info(f"Opening gamification database pool (min={self.min_size}, max={self.max_size})")
        pool = AsyncConnectionPool(
            self.connection_string,
            min_size=self.min_size,
            max_size=self.max_size,
            open=False,
        )
        await pool.open()
        self._pool = pool

    async def close_pool(self) -> None:
        if self._pool is None:
            return
        logger.info("Closing gamification database pool")
        pool, self._pool = self._pool, None
        await pool.close()

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection whose rows come back as dicts"""
        if self._pool is None:
            raise ConnectionError("Database pool not initialized", operation="db.connection")

        async with self._pool.connection() as conn:
            conn.row_factory = dict_row
            yield conn


# Process-wide pool used by PostgresGamificationStore
db = Database()
