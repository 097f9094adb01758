"""
Unit tests for the metadata store.
"""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from tabledef.exceptions import DatabaseError, MetadataError
from tabledef.schema.metadata import MetadataManager
from tabledef.schema.models import LogicalColumn, LogicalTable
from tabledef.schema.types import LogicalType

NOW = datetime(2024, 1, 1, 12, 0, 0)


def _table_record(table_id=1, name="Customers", owner_id=7):
    return {
        "id": table_id, "table_name": name, "description": None, "owner_id": owner_id,
        "is_deleted": False, "created_at": NOW, "updated_at": NOW,
    }


def _column_record(column_id, table_id, name, data_type="text", order=1):
    return {
        "id": column_id, "table_id": table_id, "column_name": name, "data_type": data_type,
        "is_required": False, "display_order": order, "default_value": None,
        "created_at": NOW, "updated_at": NOW,
    }


@pytest.fixture
def metadata(fake_pool):
    return MetadataManager(fake_pool)


class TestMetadataManager:
    """Test MetadataManager class."""

    def test_init(self, metadata, fake_pool):
        """Test manager initialization."""
        assert metadata.pool == fake_pool
        assert metadata.metadata_schema == "tabledef_metadata"
        assert set(metadata.required_tables) == {"custom_tables", "custom_columns"}

    def test_ddl_content(self, metadata):
        """Test that the DDL carries the uniqueness and ordering rules."""
        tables_ddl = metadata.required_tables["custom_tables"]
        columns_ddl = metadata.required_tables["custom_columns"]

        assert 'CREATE TABLE IF NOT EXISTS "tabledef_metadata"."custom_tables"' in tables_ddl
        assert "(owner_id, lower(table_name))" in tables_ddl
        assert "WHERE NOT is_deleted" in tables_ddl
        assert "CHECK (display_order BETWEEN 1 AND 999)" in columns_ddl
        assert "ON DELETE CASCADE" in columns_ddl

    @pytest.mark.asyncio
    async def test_setup_metadata_schema(self, metadata, fake_connection):
        """Test creating the schema and both tables."""
        result = await metadata.setup_metadata_schema()

        assert result["schemas_created"] == ["tabledef_metadata"]
        assert len(result["tables_created"]) == 2
        assert result["errors"] == []
        assert fake_connection.statements[0] == \
            'CREATE SCHEMA IF NOT EXISTS "tabledef_metadata"'

    @pytest.mark.asyncio
    async def test_setup_schema_failure(self, metadata, fake_connection):
        """Test that a schema failure stops the setup."""
        fake_connection.execute.side_effect = Exception("permission denied")

        result = await metadata.setup_metadata_schema()

        assert len(result["errors"]) == 1
        assert result["tables_created"] == []
        assert fake_connection.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_check_integrity(self, metadata, introspector_factory):
        """Test reporting missing metadata tables."""
        metadata.introspector = introspector_factory(list_tables=["custom_tables"])

        report = await metadata.check_metadata_integrity()

        assert not report["is_healthy"]
        assert report["tables_exist"] == {"custom_tables": True, "custom_columns": False}
        assert report["missing_components"] == ["table:custom_columns"]

    @pytest.mark.asyncio
    async def test_check_integrity_unreachable(self, metadata, introspector_factory):
        """Test that a failed listing is reported as unhealthy."""
        metadata.introspector = introspector_factory(
            list_tables=AsyncMock(side_effect=DatabaseError("connection lost"))
        )

        report = await metadata.check_metadata_integrity()

        assert not report["is_healthy"]
        assert "connection lost" in report["error"]


class TestReads:
    """Test metadata reads."""

    @pytest.mark.asyncio
    async def test_table_name_exists(self, metadata, fake_connection):
        """Test the case-insensitive name check."""
        fake_connection.fetchval.return_value = True

        assert await metadata.table_name_exists(7, " Customers ", exclude_table_id=3)
        args = fake_connection.fetchval.await_args.args
        assert "lower(table_name) = lower($2)" in args[0]
        assert args[1:] == (7, "Customers", 3)

    @pytest.mark.asyncio
    async def test_table_name_exists_error(self, metadata, fake_connection):
        """Test that query failures become MetadataError."""
        fake_connection.fetchval.side_effect = Exception("connection lost")

        with pytest.raises(MetadataError):
            await metadata.table_name_exists(7, "Customers")

    @pytest.mark.asyncio
    async def test_get_table_missing(self, metadata, fake_connection):
        """Test that an unknown or deleted table is None."""
        assert await metadata.get_table(7, 1) is None
        fake_connection.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_table(self, metadata, fake_connection):
        """Test loading a table with its columns."""
        fake_connection.fetchrow.return_value = _table_record()
        fake_connection.fetch.return_value = [
            _column_record(11, 1, "Name"),
            _column_record(12, 1, "Age", "integer", 2),
        ]

        table = await metadata.get_table(7, 1)

        assert table.name == "Customers"
        assert [c.name for c in table.columns] == ["Name", "Age"]
        assert table.columns[1].data_type == LogicalType.INTEGER
        assert fake_connection.fetch.await_args.args[1] == [1]

    @pytest.mark.asyncio
    async def test_list_tables_groups_columns(self, metadata, fake_connection):
        """Test that columns are attached to their own tables."""
        fake_connection.fetch.side_effect = [
            [_table_record(1, "A"), _table_record(2, "B")],
            [_column_record(11, 1, "X"), _column_record(21, 2, "Y"), _column_record(22, 2, "Z", order=2)],
        ]

        tables = await metadata.list_tables(owner_id=7)

        assert [t.name for t in tables] == ["A", "B"]
        assert [c.name for c in tables[1].columns] == ["Y", "Z"]
        sql = fake_connection.fetch.await_args_list[0].args[0]
        assert "owner_id = $1" in sql
        assert "NOT is_deleted" in sql

    @pytest.mark.asyncio
    async def test_list_all_including_deleted(self, metadata, fake_connection):
        """Test listing without filters."""
        tables = await metadata.list_tables(include_deleted=True)

        assert tables == []
        assert "WHERE" not in fake_connection.fetch.await_args.args[0]


class TestWrites:
    """Test metadata writes."""

    @pytest.mark.asyncio
    async def test_insert_table(self, metadata, fake_connection):
        """Test that generated ids are written back to the model."""
        fake_connection.fetchrow.side_effect = [
            {"id": 5, "created_at": NOW, "updated_at": NOW},
            {"id": 50, "created_at": NOW, "updated_at": NOW},
            {"id": 51, "created_at": NOW, "updated_at": NOW},
        ]
        table = LogicalTable(name="Orders", owner_id=7, columns=[
            LogicalColumn(name="Total", data_type=LogicalType.DECIMAL, display_order=1),
            LogicalColumn(name="Note", data_type=LogicalType.TEXT, display_order=2),
        ])

        result = await metadata.insert_table(table, conn=fake_connection)

        assert result.id == 5
        assert [c.id for c in result.columns] == [50, 51]
        assert all(c.table_id == 5 for c in result.columns)
        column_args = fake_connection.fetchrow.await_args_list[1].args
        assert column_args[1:] == (5, "Total", "decimal", False, 1, None)

    @pytest.mark.asyncio
    async def test_insert_table_failure(self, metadata, fake_connection):
        """Test that insert failures raise MetadataError."""
        fake_connection.fetchrow.side_effect = Exception("duplicate key value")

        with pytest.raises(MetadataError):
            await metadata.insert_table(LogicalTable(name="Orders", owner_id=7))

    @pytest.mark.asyncio
    async def test_soft_delete(self, metadata, fake_connection):
        """Test soft deletion status handling."""
        fake_connection.execute.return_value = "UPDATE 1"
        assert await metadata.soft_delete_table(1)

        fake_connection.execute.return_value = "UPDATE 0"
        assert not await metadata.soft_delete_table(1)

    @pytest.mark.asyncio
    async def test_update_column(self, metadata, fake_connection):
        """Test updating a column record."""
        column = LogicalColumn(id=12, table_id=1, name="Years", data_type=LogicalType.INTEGER,
                               is_required=True, display_order=2, default_value="18")

        await metadata.update_column(column)

        assert fake_connection.execute.await_args.args[1:] == (
            12, "Years", "integer", True, 2, "18"
        )

    @pytest.mark.asyncio
    async def test_write_failure(self, metadata, fake_connection):
        """Test that write failures raise MetadataError."""
        fake_connection.execute = AsyncMock(side_effect=Exception("connection lost"))

        with pytest.raises(MetadataError):
            await metadata.delete_column(12)

    @pytest.mark.asyncio
    async def test_update_table_header(self, metadata, fake_connection):
        """Test renaming a table record."""
        await metadata.update_table_header(1, "Clients", "Renamed", conn=fake_connection)

        assert fake_connection.execute.await_args.args[1:] == (1, "Clients", "Renamed")
