"""Tests for the database pool wrapper (src/db/connection.py)"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from src.db.connection import Database
from src.exceptions import ConnectionError


@pytest.mark.asyncio
async def test_connection_before_init_raises():
    database = Database("postgresql://localhost/test")

    assert database.is_initialized is False
    with pytest.raises(ConnectionError):
        async with database.connection():
            pass


@pytest.mark.asyncio
async def test_init_pool_opens_once_and_close_resets():
    pool = MagicMock()
    pool.open = AsyncMock()
    pool.close = AsyncMock()

    with patch("src.db.connection.AsyncConnectionPool", return_value=pool) as pool_class:
        database = Database("postgresql://localhost/test", min_size=1, max_size=3)
        await database.init_pool()
        await database.init_pool()

    pool_class.assert_called_once_with(
        "postgresql://localhost/test", min_size=1, max_size=3, open=False
    )
    pool.open.assert_awaited_once()
    assert database.is_initialized is True

    await database.close_pool()
    await database.close_pool()

    pool.close.assert_awaited_once()
    assert database.is_initialized is False
