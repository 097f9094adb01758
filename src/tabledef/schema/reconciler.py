"""
Reconciliation between the metadata store and the physical tables.

The physical table is the source of truth for stored data. The reconciler
recomputes each table's derived physical name, compares what it finds
with the logical record and offers repair operations: recreating a
missing physical table and dropping physical tables that no logical
table owns any more.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import TabledefError
from .metadata import MetadataManager
from .models import LogicalTable
from .naming import (
    PHYSICAL_TABLE_PREFIX,
    SYSTEM_COLUMNS,
    is_backup_table,
    owner_table_prefix,
)
from .operations import DdlExecutor, DdlOperationResult


logger = logging.getLogger(__name__)


class ReconciliationStatus(str, Enum):
    """Status of reconciliation operations."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ConsistencyReport:
    """Differences between one logical table and its physical table."""

    logical_name: str
    physical_name: str
    owner_id: int
    table_id: Optional[int] = None
    exists: bool = False
    row_count: Optional[int] = None
    missing_columns: List[str] = field(default_factory=list)
    unexpected_columns: List[str] = field(default_factory=list)
    type_mismatches: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    nullability_mismatches: List[str] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return self.exists and not (
            self.missing_columns
            or self.unexpected_columns
            or self.type_mismatches
            or self.nullability_mismatches
        )


@dataclass
class ReconciliationResult:
    """Result of reconciling all tables of one owner."""

    status: ReconciliationStatus
    owner_id: int
    reports: List[ConsistencyReport] = field(default_factory=list)
    recreated_tables: List[str] = field(default_factory=list)
    orphaned_tables: List[str] = field(default_factory=list)
    dropped_tables: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    execution_time_ms: float = 0.0

    @property
    def inconsistent_tables(self) -> List[ConsistencyReport]:
        return [r for r in self.reports if not r.is_consistent]

    @property
    def repaired_count(self) -> int:
        return len(self.recreated_tables) + len(self.dropped_tables)


class SchemaReconciler:
    """Compares and repairs physical tables against the metadata store."""

    def __init__(self, pool: ConnectionPool, metadata: MetadataManager, executor: DdlExecutor):
        self.pool = pool
        self.metadata = metadata
        self.executor = executor
        self.physical_schema = executor.physical_schema
        self.introspector = SchemaIntrospector(pool)

    async def check_table(self, table: LogicalTable) -> ConsistencyReport:
        """Compare a logical table with the physical table its name derives to."""
        report = ConsistencyReport(
            logical_name=table.name,
            physical_name=table.physical_name,
            owner_id=table.owner_id,
            table_id=table.id,
        )

        report.exists = await self.introspector.table_exists(self.physical_schema, report.physical_name)
        if not report.exists:
            logger.warning(f"Physical table {report.physical_name} for '{table.name}' is missing")
            return report

        actual = await self.introspector.get_columns(self.physical_schema, report.physical_name)
        report.row_count = await self.introspector.row_count(self.physical_schema, report.physical_name)

        expected = set(SYSTEM_COLUMNS)
        for system_column in SYSTEM_COLUMNS:
            if system_column not in actual:
                report.missing_columns.append(system_column)

        for column in table.ordered_columns:
            expected.add(column.physical_name)
            info = actual.get(column.physical_name)
            if info is None:
                report.missing_columns.append(column.name)
                continue
            if info.logical_type != column.data_type:
                report.type_mismatches[column.name] = (column.data_type.value, info.data_type)
            if column.is_required == info.is_nullable:
                report.nullability_mismatches.append(column.name)

        report.unexpected_columns = [name for name in actual if name not in expected]
        return report

    async def list_physical_tables(self, owner_id: Optional[int] = None) -> List[str]:
        """Physical tables following the naming scheme, optionally for one owner."""
        prefix = owner_table_prefix(owner_id) if owner_id is not None else f"{PHYSICAL_TABLE_PREFIX}_"
        return await self.introspector.list_tables(self.physical_schema, prefix)

    async def find_orphaned_tables(self, owner_id: int) -> List[str]:
        """Physical tables of ``owner_id`` that no live logical table derives to."""
        physical = await self.list_physical_tables(owner_id)
        expected = {t.physical_name for t in await self.metadata.list_tables(owner_id)}
        return [name for name in physical if name not in expected and not is_backup_table(name)]

    async def recreate_physical_table(
        self, table: LogicalTable, drop_existing: bool = False
    ) -> DdlOperationResult:
        """Build the physical table again from the logical record."""
        physical = table.physical_name
        exists = await self.introspector.table_exists(self.physical_schema, physical)
        if exists and not drop_existing:
            return DdlOperationResult.failure(
                f"Physical table {physical} already exists; pass drop_existing to replace it"
            )

        changes = []
        if exists:
            changes.append(self.executor.drop_table_change(physical))
        changes.append(self.executor.create_table_change(physical, table.columns))

        result = await self.executor.apply_changes(changes)
        if result.success:
            logger.info(f"Recreated physical table {physical} for '{table.name}'")
        return result

    async def drop_orphaned_table(self, owner_id: int, physical_name: str) -> DdlOperationResult:
        """Drop a physical table, but only if it is an orphan of ``owner_id``."""
        orphans = await self.find_orphaned_tables(owner_id)
        if physical_name not in orphans:
            return DdlOperationResult.failure(
                f"{physical_name} is not an orphaned table of owner {owner_id}"
            )

        result = await self.executor.apply_changes([self.executor.drop_table_change(physical_name)])
        if result.success:
            logger.info(f"Dropped orphaned table {physical_name}")
        return result

    async def reconcile_owner(
        self,
        owner_id: int,
        recreate_missing: bool = True,
        drop_orphans: bool = False,
    ) -> ReconciliationResult:
        """Check every table of an owner and repair what the flags allow."""
        start_time = asyncio.get_event_loop().time()
        result = ReconciliationResult(status=ReconciliationStatus.SKIPPED, owner_id=owner_id)
        attempted = 0

        try:
            logger.info(f"Starting reconciliation for owner {owner_id}")

            for table in await self.metadata.list_tables(owner_id):
                report = await self.check_table(table)
                result.reports.append(report)

                if not report.exists and recreate_missing:
                    attempted += 1
                    recreated = await self.recreate_physical_table(table)
                    if recreated.success:
                        result.recreated_tables.append(report.physical_name)
                    else:
                        result.errors.append(recreated.message)

            result.orphaned_tables = await self.find_orphaned_tables(owner_id)
            if drop_orphans:
                for physical_name in result.orphaned_tables:
                    attempted += 1
                    dropped = await self.drop_orphaned_table(owner_id, physical_name)
                    if dropped.success:
                        result.dropped_tables.append(physical_name)
                    else:
                        result.errors.append(dropped.message)

            if not result.errors:
                result.status = ReconciliationStatus.SUCCESS
            elif result.repaired_count:
                result.status = ReconciliationStatus.PARTIAL
            else:
                result.status = ReconciliationStatus.FAILED

        except TabledefError as e:
            logger.error(f"Reconciliation failed for owner {owner_id}: {e}")
            result.errors.append(str(e))
            result.status = ReconciliationStatus.FAILED

        finally:
            result.execution_time_ms = (asyncio.get_event_loop().time() - start_time) * 1000

        logger.info(
            f"Reconciliation completed for owner {owner_id}: "
            f"{result.status.value} ({attempted} repairs attempted, "
            f"{result.execution_time_ms:.1f}ms)"
        )
        return result
