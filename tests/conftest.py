"""
Pytest configuration and shared fixtures for tabledef tests.

The fake connection and pool below stand in for asyncpg: every statement
passed to ``execute`` is recorded, and transactions count their commits
and rollbacks so tests can assert atomicity without a database.
"""

import os
from contextlib import asynccontextmanager
from typing import Any, List
from unittest.mock import AsyncMock, Mock

import pytest

from tabledef.schema.models import LogicalColumn, LogicalTable
from tabledef.schema.types import LogicalType


# ============================================================================
# Fake asyncpg
# ============================================================================

class FakeTransaction:
    """Async context manager mimicking ``asyncpg.Connection.transaction()``."""

    def __init__(self, conn: "FakeConnection"):
        self.conn = conn

    async def __aenter__(self):
        self.conn.transactions_started += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.conn.commits += 1
        else:
            self.conn.rollbacks += 1
        return False


class FakeConnection:
    """Records statements; query results are configured per test."""

    def __init__(self):
        self.execute = AsyncMock(return_value="OK")
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=None)
        self.transactions_started = 0
        self.commits = 0
        self.rollbacks = 0

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    @property
    def statements(self) -> List[str]:
        return [c.args[0] for c in self.execute.call_args_list]


class FakePool:
    """Stand-in for ``ConnectionPool`` that always hands out one connection."""

    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn

    async def execute(self, query: str, *args) -> str:
        return await self.conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> List[Any]:
        return await self.conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Any:
        return await self.conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args) -> Any:
        return await self.conn.fetchval(query, *args)


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_connection) -> FakePool:
    return FakePool(fake_connection)


def make_introspector(**overrides) -> Mock:
    """Introspector mock describing an existing, empty table by default."""
    introspector = Mock()
    introspector.table_exists = AsyncMock(return_value=True)
    introspector.row_count = AsyncMock(return_value=0)
    introspector.has_column = AsyncMock(return_value=True)
    introspector.get_columns = AsyncMock(return_value={})
    introspector.list_tables = AsyncMock(return_value=[])
    introspector.column_has_data = AsyncMock(return_value=False)
    introspector.count_null_values = AsyncMock(return_value=0)
    introspector.count_unconvertible_values = AsyncMock(return_value=0)
    introspector.estimate_table_size = AsyncMock(return_value=0)
    for name, value in overrides.items():
        if isinstance(value, AsyncMock):
            setattr(introspector, name, value)
        else:
            setattr(introspector, name, AsyncMock(return_value=value))
    return introspector


@pytest.fixture
def introspector_factory():
    return make_introspector


# ============================================================================
# Logical model fixtures
# ============================================================================

@pytest.fixture
def sample_table() -> LogicalTable:
    """Customers table of owner 7 with one column of every type."""
    return LogicalTable(
        id=1,
        name="Customers",
        owner_id=7,
        description="Customer list",
        columns=[
            LogicalColumn(id=11, table_id=1, name="Name", data_type=LogicalType.TEXT,
                          is_required=True, display_order=1),
            LogicalColumn(id=12, table_id=1, name="Age", data_type=LogicalType.INTEGER,
                          display_order=2),
            LogicalColumn(id=13, table_id=1, name="Balance", data_type=LogicalType.DECIMAL,
                          display_order=3, default_value="0"),
            LogicalColumn(id=14, table_id=1, name="JoinedAt", data_type=LogicalType.TIMESTAMP,
                          display_order=4),
        ],
    )


# ============================================================================
# Environment Setup
# ============================================================================

@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment variables."""
    original_env = dict(os.environ)

    os.environ.update({
        "POSTGRES_HOST": "localhost",
        "POSTGRES_DB": "test_db",
        "POSTGRES_USER": "test_user",
        "POSTGRES_PASSWORD": "test_password",
    })

    yield

    os.environ.clear()
    os.environ.update(original_env)
