"""
Unit tests for schema reconciliation.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from tabledef.database.introspection import ColumnInfo
from tabledef.exceptions import MetadataError
from tabledef.schema.operations import DdlExecutor
from tabledef.schema.reconciler import (
    ConsistencyReport,
    ReconciliationResult,
    ReconciliationStatus,
    SchemaReconciler,
)


def _columns(**overrides):
    columns = {
        "Id": ColumnInfo("Id", "integer", False, ordinal_position=1),
        "RowIdentifier": ColumnInfo("RowIdentifier", "integer", False, ordinal_position=2),
        "Name": ColumnInfo("Name", "character varying", False, max_length=255, ordinal_position=3),
        "Age": ColumnInfo("Age", "integer", True, ordinal_position=4),
        "Balance": ColumnInfo("Balance", "numeric", True, ordinal_position=5),
        "JoinedAt": ColumnInfo("JoinedAt", "timestamp without time zone", True, ordinal_position=6),
    }
    for name, info in overrides.items():
        if info is None:
            columns.pop(name)
        else:
            columns[name] = info
    return columns


@pytest.fixture
def metadata(sample_table):
    metadata = Mock()
    metadata.list_tables = AsyncMock(return_value=[sample_table])
    return metadata


@pytest.fixture
def reconciler(fake_pool, metadata, introspector_factory):
    reconciler = SchemaReconciler(fake_pool, metadata, DdlExecutor(fake_pool))
    reconciler.introspector = introspector_factory(get_columns=_columns(), row_count=2)
    return reconciler


class TestReconciliationStatus:
    """Test ReconciliationStatus enum."""

    def test_values(self):
        """Test status values."""
        assert ReconciliationStatus.SUCCESS.value == "success"
        assert ReconciliationStatus.PARTIAL.value == "partial"
        assert ReconciliationStatus.FAILED.value == "failed"


class TestResults:
    """Test report and result dataclasses."""

    def test_missing_table_is_inconsistent(self):
        """Test that a missing physical table is never consistent."""
        assert not ConsistencyReport("A", "Table_1_A", 1).is_consistent

    def test_result_properties(self):
        """Test derived result properties."""
        good = ConsistencyReport("A", "Table_1_A", 1, exists=True)
        bad = ConsistencyReport("B", "Table_1_B", 1)
        result = ReconciliationResult(
            status=ReconciliationStatus.SUCCESS, owner_id=1, reports=[good, bad],
            recreated_tables=["Table_1_B"], dropped_tables=["Table_1_C"],
        )
        assert result.inconsistent_tables == [bad]
        assert result.repaired_count == 2


class TestCheckTable:
    """Test check_table."""

    @pytest.mark.asyncio
    async def test_consistent(self, reconciler, sample_table):
        """Test a physical table that matches its logical record."""
        report = await reconciler.check_table(sample_table)

        assert report.exists
        assert report.is_consistent
        assert report.row_count == 2
        assert report.physical_name == "Table_7_Customers"

    @pytest.mark.asyncio
    async def test_drift(self, reconciler, sample_table):
        """Test every kind of difference at once."""
        reconciler.introspector.get_columns = AsyncMock(return_value=_columns(
            JoinedAt=None,
            Age=ColumnInfo("Age", "character varying", True),
            Name=ColumnInfo("Name", "character varying", True),
            Legacy=ColumnInfo("Legacy", "text", True),
        ))

        report = await reconciler.check_table(sample_table)

        assert not report.is_consistent
        assert report.missing_columns == ["JoinedAt"]
        assert report.type_mismatches == {"Age": ("integer", "character varying")}
        assert report.unexpected_columns == ["Legacy"]
        assert report.nullability_mismatches == ["Name"]

    @pytest.mark.asyncio
    async def test_missing_system_column(self, reconciler, sample_table):
        """Test that system columns are checked too."""
        reconciler.introspector.get_columns = AsyncMock(return_value=_columns(RowIdentifier=None))

        report = await reconciler.check_table(sample_table)

        assert report.missing_columns == ["RowIdentifier"]

    @pytest.mark.asyncio
    async def test_missing_table(self, reconciler, sample_table):
        """Test a logical table without a physical table."""
        reconciler.introspector.table_exists = AsyncMock(return_value=False)

        report = await reconciler.check_table(sample_table)

        assert not report.exists
        reconciler.introspector.get_columns.assert_not_awaited()


class TestOrphans:
    """Test orphan detection and cleanup."""

    @pytest.mark.asyncio
    async def test_find_orphaned_tables(self, reconciler):
        """Test that live tables and backups are not orphans."""
        reconciler.introspector.list_tables = AsyncMock(return_value=[
            "Table_7_Customers", "Table_7_Old", "Table_7_Customers_backup_20240101000000",
        ])

        assert await reconciler.find_orphaned_tables(7) == ["Table_7_Old"]
        reconciler.introspector.list_tables.assert_awaited_once_with("public", "Table_7_")

    @pytest.mark.asyncio
    async def test_list_all_physical_tables(self, reconciler):
        """Test listing across owners."""
        await reconciler.list_physical_tables()
        reconciler.introspector.list_tables.assert_awaited_once_with("public", "Table_")

    @pytest.mark.asyncio
    async def test_drop_orphan(self, reconciler, fake_connection):
        """Test dropping an orphaned table."""
        reconciler.introspector.list_tables = AsyncMock(return_value=["Table_7_Old"])

        result = await reconciler.drop_orphaned_table(7, "Table_7_Old")

        assert result.success
        assert fake_connection.statements == ['DROP TABLE IF EXISTS "public"."Table_7_Old"']

    @pytest.mark.asyncio
    async def test_refuse_to_drop_live_table(self, reconciler, fake_connection):
        """Test that a table with a logical owner is never dropped."""
        reconciler.introspector.list_tables = AsyncMock(return_value=["Table_7_Customers"])

        result = await reconciler.drop_orphaned_table(7, "Table_7_Customers")

        assert not result.success
        fake_connection.execute.assert_not_awaited()


class TestRecreate:
    """Test recreate_physical_table."""

    @pytest.mark.asyncio
    async def test_refuse_existing(self, reconciler, sample_table, fake_connection):
        """Test that an existing table is kept unless replacement is requested."""
        result = await reconciler.recreate_physical_table(sample_table)

        assert not result.success
        fake_connection.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replace_existing(self, reconciler, sample_table, fake_connection):
        """Test drop and create in one transaction."""
        result = await reconciler.recreate_physical_table(sample_table, drop_existing=True)

        assert result.success
        assert fake_connection.statements[0] == \
            'DROP TABLE IF EXISTS "public"."Table_7_Customers"'
        assert fake_connection.statements[1].startswith(
            'CREATE TABLE "public"."Table_7_Customers"'
        )
        assert fake_connection.commits == 1

    @pytest.mark.asyncio
    async def test_create_missing(self, reconciler, sample_table, fake_connection):
        """Test creating a missing table."""
        reconciler.introspector.table_exists = AsyncMock(return_value=False)

        result = await reconciler.recreate_physical_table(sample_table)

        assert result.success
        assert len(fake_connection.statements) == 1


class TestReconcileOwner:
    """Test reconcile_owner."""

    @pytest.mark.asyncio
    async def test_recreates_missing_and_reports_orphans(self, reconciler):
        """Test a run that repairs one table and leaves orphans alone."""
        reconciler.introspector.table_exists = AsyncMock(return_value=False)
        reconciler.introspector.list_tables = AsyncMock(return_value=["Table_7_Old"])

        result = await reconciler.reconcile_owner(7)

        assert result.status == ReconciliationStatus.SUCCESS
        assert result.recreated_tables == ["Table_7_Customers"]
        assert result.orphaned_tables == ["Table_7_Old"]
        assert result.dropped_tables == []
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_drop_orphans(self, reconciler):
        """Test a run that also removes orphans."""
        reconciler.introspector.list_tables = AsyncMock(return_value=["Table_7_Old"])

        result = await reconciler.reconcile_owner(7, drop_orphans=True)

        assert result.status == ReconciliationStatus.SUCCESS
        assert result.dropped_tables == ["Table_7_Old"]

    @pytest.mark.asyncio
    async def test_check_only(self, reconciler, fake_connection):
        """Test that disabling repairs only reports."""
        reconciler.introspector.table_exists = AsyncMock(return_value=False)

        result = await reconciler.reconcile_owner(7, recreate_missing=False)

        assert result.status == ReconciliationStatus.SUCCESS
        assert len(result.inconsistent_tables) == 1
        fake_connection.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_repair(self, reconciler, fake_connection):
        """Test that a failing repair marks the run as failed."""
        reconciler.introspector.table_exists = AsyncMock(return_value=False)
        fake_connection.execute.side_effect = Exception("permission denied")

        result = await reconciler.reconcile_owner(7)

        assert result.status == ReconciliationStatus.FAILED
        assert "permission denied" in result.errors[0]

    @pytest.mark.asyncio
    async def test_metadata_failure(self, reconciler, metadata):
        """Test that metadata errors fail the run without raising."""
        metadata.list_tables = AsyncMock(side_effect=MetadataError("store unavailable"))

        result = await reconciler.reconcile_owner(7)

        assert result.status == ReconciliationStatus.FAILED
        assert result.errors == ["store unavailable"]
