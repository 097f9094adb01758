"""
Unit tests for database connection management.
"""

from unittest.mock import AsyncMock, Mock, patch

import asyncpg
import pytest
from asyncpg.exceptions import PostgresConnectionError
from pydantic import ValidationError

from tabledef.database.connection import ConnectionConfig, ConnectionPool
from tabledef.exceptions import DatabaseConnectionError


class TestConnectionConfig:
    """Test cases for ConnectionConfig."""

    def test_pool_size_validation(self):
        """Test that max_size cannot be below min_size."""
        with pytest.raises(ValidationError):
            ConnectionConfig(host="h", database="d", user="u", password="p",
                             min_size=5, max_size=2)

    def test_connection_kwargs(self):
        """Test conversion to asyncpg kwargs."""
        config = ConnectionConfig(host="h", database="d", user="u", password="p")
        kwargs = config.to_connection_kwargs()

        assert kwargs["server_settings"] == {"application_name": "tabledef"}
        assert kwargs["command_timeout"] == 60.0
        assert "ssl" not in kwargs

    def test_connection_kwargs_with_ssl(self):
        """Test that an SSL mode is passed through."""
        config = ConnectionConfig(host="h", database="d", user="u", password="p",
                                  ssl_mode="require")

        assert config.to_connection_kwargs()["ssl"] == "require"


class TestConnectionPool:
    """Test cases for ConnectionPool."""

    @pytest.fixture
    def config(self):
        return ConnectionConfig(host="localhost", database="test_db",
                                user="test_user", password="test_pass", max_size=5)

    @pytest.fixture
    def mock_conn(self):
        return AsyncMock()

    @pytest.fixture
    def mock_pool(self, mock_conn):
        """Mock asyncpg pool whose acquire() yields ``mock_conn``."""
        pool = AsyncMock(spec=asyncpg.Pool)
        acquire_cm = AsyncMock()
        acquire_cm.__aenter__ = AsyncMock(return_value=mock_conn)
        acquire_cm.__aexit__ = AsyncMock(return_value=None)
        pool.acquire = Mock(return_value=acquire_cm)
        pool.close = AsyncMock()
        return pool

    @pytest.mark.asyncio
    async def test_initialize(self, config, mock_pool):
        """Test successful pool initialization."""
        with patch("asyncpg.create_pool", AsyncMock(return_value=mock_pool)) as mock_create:
            pool = ConnectionPool(config)
            await pool.initialize()
            await pool.initialize()

            assert pool.is_initialized
            mock_create.assert_awaited_once()
            assert mock_create.await_args.kwargs["max_size"] == 5

    @pytest.mark.asyncio
    async def test_initialize_failure(self, config):
        """Test pool initialization failure handling."""
        failing = AsyncMock(side_effect=PostgresConnectionError("Connection failed"))
        with patch("asyncpg.create_pool", failing):
            pool = ConnectionPool(config)

            with pytest.raises(DatabaseConnectionError, match="Failed to initialize connection pool"):
                await pool.initialize()
            assert not pool.is_initialized

    @pytest.mark.asyncio
    async def test_acquire_when_not_initialized(self, config):
        """Test acquiring a connection before initialization."""
        pool = ConnectionPool(config)

        with pytest.raises(DatabaseConnectionError, match="Pool is not connected"):
            async with pool.acquire():
                pass

    @pytest.mark.asyncio
    async def test_query_helpers(self, config, mock_pool, mock_conn):
        """Test that queries run on an acquired connection."""
        mock_conn.fetchval.return_value = 42
        mock_conn.execute.return_value = "UPDATE 1"

        with patch("asyncpg.create_pool", AsyncMock(return_value=mock_pool)):
            async with ConnectionPool(config) as pool:
                assert await pool.fetchval("SELECT 42") == 42
                assert await pool.execute("UPDATE t SET a = $1", 1) == "UPDATE 1"

        mock_conn.fetchval.assert_awaited_with("SELECT 42", column=0)
        mock_conn.execute.assert_awaited_with("UPDATE t SET a = $1", 1)
        mock_pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_test_connection(self, config, mock_pool, mock_conn):
        """Test the connectivity report."""
        mock_conn.fetchrow.return_value = {
            "version": "PostgreSQL 16", "current_database": "test_db", "current_user": "u",
        }

        with patch("asyncpg.create_pool", AsyncMock(return_value=mock_pool)):
            pool = ConnectionPool(config)
            await pool.initialize()
            report = await pool.test_connection()

        assert report == {
            "status": "connected", "database": "test_db", "user": "u",
            "version": "PostgreSQL 16",
        }

    @pytest.mark.asyncio
    async def test_test_connection_failure(self, config, mock_pool, mock_conn):
        """Test that connectivity failures are reported, not raised."""
        mock_conn.fetchrow.side_effect = Exception("Query failed")

        with patch("asyncpg.create_pool", AsyncMock(return_value=mock_pool)):
            pool = ConnectionPool(config)
            await pool.initialize()
            report = await pool.test_connection()

        assert report["status"] == "failed"
        assert "Query failed" in report["error"]

    @pytest.mark.asyncio
    async def test_test_connection_before_initialize(self, config):
        """Test that an unopened pool is reported as a failed connection."""
        report = await ConnectionPool(config).test_connection()

        assert report == {"status": "failed", "error": "Pool is not connected"}
