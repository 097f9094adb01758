"""
Table definition service.

Wires the engine together for one logical request at a time: the
validator judges the change, the DDL executor alters the physical table
and the metadata store records the new logical definition. Physical DDL
and metadata writes share one transaction, so a failure leaves both
untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .config import SchemaManagementConfig
from .database.connection import ConnectionPool
from .exceptions import DdlExecutionError, MetadataError
from .schema.metadata import MetadataManager
from .schema.models import (
    ColumnUpdate,
    CreateTableRequest,
    LogicalColumn,
    LogicalTable,
    UpdateTableRequest,
)
from .schema.naming import derive_physical_name, sanitize_identifier
from .schema.operations import DdlExecutor, OperationMode, SchemaChange
from .schema.reconciler import SchemaReconciler
from .schema.rows import RowOperations
from .schema.types import format_default_literal, zero_literal
from .schema.validation import SchemaValidator, TableValidationResult


logger = logging.getLogger(__name__)


@dataclass
class TableOperationResult:
    """Outcome of a service call."""

    success: bool
    message: str = ""
    table: Optional[LogicalTable] = None
    requires_force_update: bool = False
    validation_result: Optional[TableValidationResult] = None
    executed_statements: List[str] = field(default_factory=list)
    backup_table: Optional[str] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_identifier: Optional[int] = None
    affected_rows: int = 0

    @classmethod
    def failure(cls, message: str, **kwargs) -> "TableOperationResult":
        return cls(success=False, message=message, **kwargs)


class TableDefinitionService:
    """Create, evolve and fill user-defined tables."""

    def __init__(self, pool: ConnectionPool, config: Optional[SchemaManagementConfig] = None):
        self.pool = pool
        self.config = config or SchemaManagementConfig()

        schema = self.config.physical_schema
        self.executor = DdlExecutor(pool, schema, self.config.operation_mode)
        self.validator = SchemaValidator(pool, schema)
        self.rows = RowOperations(pool, schema)
        self.metadata = MetadataManager(pool, self.config.metadata_schema)
        self.reconciler = SchemaReconciler(pool, self.metadata, self.executor)

    @property
    def dry_run(self) -> bool:
        return self.executor.operation_mode == OperationMode.DRY_RUN

    async def _run_in_transaction(self, changes: List[SchemaChange], write_metadata) -> List[str]:
        """
        Apply ``changes`` and the metadata writes in one transaction.

        ``write_metadata`` is awaited with the transaction's connection
        after the DDL succeeded. Raises DdlExecutionError or MetadataError;
        the transaction is rolled back in both cases.
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    ddl = await self.executor.apply_changes(changes, conn)
                    if not ddl.success:
                        raise DdlExecutionError(ddl.message)
                    await write_metadata(conn)
        except (DdlExecutionError, MetadataError):
            raise
        except Exception as e:
            raise DdlExecutionError(f"Transaction failed: {e}", cause=e) from e
        return ddl.executed_statements

    # Tables

    async def list_tables(self, owner_id: int) -> List[LogicalTable]:
        return await self.metadata.list_tables(owner_id)

    async def create_table(self, owner_id: int, request: CreateTableRequest) -> TableOperationResult:
        if len(request.columns) > self.config.max_columns:
            return TableOperationResult.failure(
                f"A table cannot have more than {self.config.max_columns} columns"
            )
        if await self.metadata.table_name_exists(owner_id, request.table_name):
            return TableOperationResult.failure(f"A table named '{request.table_name}' already exists")

        table = LogicalTable(
            name=request.table_name,
            owner_id=owner_id,
            description=request.description,
            columns=[c.to_logical_column() for c in request.columns],
        )
        physical = table.physical_name
        if await self.executor.introspector.table_exists(self.config.physical_schema, physical):
            return TableOperationResult.failure(f"Physical table {physical} already exists")

        changes = [self.executor.create_table_change(physical, table.columns)]
        if self.dry_run:
            ddl = await self.executor.apply_changes(changes)
            return TableOperationResult(
                success=ddl.success, message=ddl.message, table=table,
                executed_statements=ddl.executed_statements,
            )

        async def write_metadata(conn):
            await self.metadata.insert_table(table, conn)

        try:
            statements = await self._run_in_transaction(changes, write_metadata)
        except (DdlExecutionError, MetadataError) as e:
            logger.error(f"Failed to create table '{request.table_name}': {e}")
            return TableOperationResult.failure(e.message)

        logger.info(f"Created table '{table.name}' as {physical}")
        return TableOperationResult(
            success=True,
            message=f"Table '{table.name}' created",
            table=table,
            executed_statements=statements,
        )

    async def delete_table(self, owner_id: int, table_id: int) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")

        changes = [self.executor.drop_table_change(table.physical_name)]
        if self.dry_run:
            ddl = await self.executor.apply_changes(changes)
            return TableOperationResult(
                success=ddl.success, message=ddl.message, table=table,
                executed_statements=ddl.executed_statements,
            )

        async def write_metadata(conn):
            await self.metadata.soft_delete_table(table.id, conn)

        try:
            statements = await self._run_in_transaction(changes, write_metadata)
        except (DdlExecutionError, MetadataError) as e:
            logger.error(f"Failed to delete table {table_id}: {e}")
            return TableOperationResult.failure(e.message)

        table.is_deleted = True
        logger.info(f"Deleted table '{table.name}' ({table.physical_name})")
        return TableOperationResult(
            success=True,
            message=f"Table '{table.name}' deleted",
            table=table,
            executed_statements=statements,
        )

    async def _validate(self, table: LogicalTable, request: UpdateTableRequest) -> TableValidationResult:
        validation = await self.validator.validate_table_update(
            table, request.table_name, request.columns
        )
        if request.columns is not None and len(request.columns) > self.config.max_columns:
            validation.reject(f"A table cannot have more than {self.config.max_columns} columns")
        if request.table_name.strip().lower() != table.name.lower():
            if await self.metadata.table_name_exists(
                table.owner_id, request.table_name, exclude_table_id=table.id
            ):
                validation.reject(f"A table named '{request.table_name}' already exists")
        return validation

    async def validate_table_update(
        self, owner_id: int, table_id: int, request: UpdateTableRequest
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")

        validation = await self._validate(table, request)
        return TableOperationResult(
            success=validation.is_valid,
            message="Update is valid" if validation.is_valid else "Update is not valid",
            table=table,
            requires_force_update=validation.requires_force_update,
            validation_result=validation,
        )

    async def update_table(
        self, owner_id: int, table_id: int, request: UpdateTableRequest
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")
        return await self._update(table, request)

    async def _update(self, table: LogicalTable, request: UpdateTableRequest) -> TableOperationResult:
        validation = await self._validate(table, request)
        if not validation.is_valid:
            return TableOperationResult.failure(
                "Validation failed: " + "; ".join(validation.all_issues),
                table=table,
                validation_result=validation,
            )
        if not validation.can_apply(request.force_update, request.forced_columns):
            return TableOperationResult.failure(
                "The update may lose data and must be confirmed with force_update",
                table=table,
                requires_force_update=True,
                validation_result=validation,
            )

        forced = validation.requires_force_update
        changes, new_columns, updated_columns, removed_columns = self._plan_update(
            table, request, forced
        )

        if self.dry_run:
            ddl = await self.executor.apply_changes(changes)
            return TableOperationResult(
                success=ddl.success, message=ddl.message, table=table,
                validation_result=validation, executed_statements=ddl.executed_statements,
            )

        backup_table = None
        needs_backup = validation.has_structural_changes and validation.affected_row_count > 0
        backup_required = forced and self.config.require_backup_when_forced
        if needs_backup and (self.config.backup_before_structural_changes or backup_required):
            backup = await self.executor.create_backup_table(table.name, table.owner_id)
            if backup.success:
                backup_table = backup.backup_table
            elif backup_required:
                return TableOperationResult.failure(
                    f"Backup failed, update aborted: {backup.message}",
                    table=table,
                    validation_result=validation,
                )
            else:
                logger.warning(f"Continuing without backup of {table.physical_name}: {backup.message}")

        async def write_metadata(conn):
            await self.metadata.update_table_header(table.id, request.table_name, request.description, conn)
            for column in removed_columns:
                await self.metadata.delete_column(column.id, conn)
            for column in updated_columns:
                await self.metadata.update_column(column, conn)
            for column in new_columns:
                await self.metadata.insert_column(table.id, column, conn)

        try:
            statements = await self._run_in_transaction(changes, write_metadata)
        except (DdlExecutionError, MetadataError) as e:
            logger.error(f"Failed to update table '{table.name}': {e}")
            return TableOperationResult.failure(
                e.message, table=table, validation_result=validation, backup_table=backup_table
            )

        if request.columns is not None:
            table.columns = updated_columns + new_columns
        table.name = request.table_name
        table.description = request.description

        logger.info(f"Updated table '{table.name}' with {len(statements)} statements")
        return TableOperationResult(
            success=True,
            message=f"Table '{table.name}' updated",
            table=table,
            requires_force_update=forced,
            validation_result=validation,
            executed_statements=statements,
            backup_table=backup_table,
        )

    def _plan_update(
        self, table: LogicalTable, request: UpdateTableRequest, forced: bool
    ) -> Tuple[List[SchemaChange], List[LogicalColumn], List[LogicalColumn], List[LogicalColumn]]:
        """
        Schema changes and metadata rows for an update, in execution order.

        The table is renamed first, then columns are dropped, added and
        finally modified.
        """
        executor = self.executor
        changes: List[SchemaChange] = []
        target = table.physical_name

        new_physical = derive_physical_name(request.table_name, table.owner_id)
        if new_physical != target:
            changes.append(executor.rename_table_change(target, new_physical))
            target = new_physical

        if request.columns is None:
            return changes, [], [], []

        kept_ids = {c.column_id for c in request.columns if not c.is_new}
        removed = [c for c in table.columns if c.id not in kept_ids]
        for column in removed:
            changes.append(executor.drop_column_change(target, column.physical_name))

        new_columns = []
        for proposed in request.columns:
            if proposed.is_new:
                column = proposed.to_logical_column(table.id)
                new_columns.append(column)
                changes.append(
                    executor.add_column_change(target, column, forced or proposed.force_update)
                )

        updated_columns = []
        for proposed in request.columns:
            if proposed.is_new:
                continue
            existing = table.get_column(proposed.column_id)
            current = existing.physical_name

            type_changed = existing.data_type != proposed.data_type
            if type_changed:
                changes.append(executor.alter_column_type_change(
                    target, current, existing.data_type, proposed.data_type,
                    had_default=existing.has_default,
                    new_default=proposed.default_value,
                ))

            if existing.name != proposed.column_name:
                renamed = sanitize_identifier(proposed.column_name)
                changes.append(executor.rename_column_change(target, current, renamed))
                current = renamed

            if existing.is_required != proposed.is_required:
                fill_literal = None
                if proposed.is_required:
                    if proposed.default_value:
                        fill_literal = format_default_literal(proposed.default_value, proposed.data_type)
                    elif forced or proposed.force_update:
                        fill_literal = zero_literal(proposed.data_type)
                changes.append(executor.nullability_change(
                    target, current, proposed.is_required, fill_literal
                ))

            default_changed = (existing.default_value or None) != (proposed.default_value or None)
            if default_changed and not type_changed:
                changes.append(executor.default_change(
                    target, current, proposed.data_type, proposed.default_value
                ))

            updated_columns.append(LogicalColumn(
                id=existing.id,
                table_id=table.id,
                name=proposed.column_name,
                data_type=proposed.data_type,
                is_required=proposed.is_required,
                display_order=proposed.display_order,
                default_value=proposed.default_value,
                created_at=existing.created_at,
            ))

        return changes, new_columns, updated_columns, removed

    # Single columns

    def _request_with_column(self, table: LogicalTable, column: ColumnUpdate) -> UpdateTableRequest:
        current = UpdateTableRequest.from_table(table)
        columns = [
            c for c in current.columns
            if column.is_new or c.column_id != column.column_id
        ]
        columns.append(column)
        return UpdateTableRequest(
            table_name=table.name,
            description=table.description,
            columns=columns,
        )

    async def validate_column_update(
        self, owner_id: int, table_id: int, column: ColumnUpdate
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")
        try:
            request = self._request_with_column(table, column)
        except PydanticValidationError as e:
            return TableOperationResult.failure(f"Invalid column update: {e}", table=table)
        return await self.validate_table_update(owner_id, table_id, request)

    async def update_column(
        self, owner_id: int, table_id: int, column: ColumnUpdate
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")
        try:
            request = self._request_with_column(table, column)
        except PydanticValidationError as e:
            return TableOperationResult.failure(f"Invalid column update: {e}", table=table)
        return await self._update(table, request)

    # Rows

    async def get_table_data(self, owner_id: int, table_id: int) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")

        rows = await self.rows.select_all_rows(table.physical_name)
        return TableOperationResult(
            success=True,
            message=f"{len(rows)} rows",
            table=table,
            rows=rows,
        )

    async def add_row(
        self, owner_id: int, table_id: int, values: Mapping[str, Any]
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")

        result = await self.rows.insert_row(table, values)
        return TableOperationResult(
            success=result.success,
            message=result.message,
            table=table,
            executed_statements=result.executed_statements,
            row_identifier=result.row_identifier,
            affected_rows=result.affected_rows,
        )

    async def update_row(
        self, owner_id: int, table_id: int, row_identifier: int, values: Mapping[str, Any]
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")

        result = await self.rows.update_row(table, row_identifier, values)
        return self._row_result(table, row_identifier, result)

    async def delete_row(
        self, owner_id: int, table_id: int, row_identifier: int
    ) -> TableOperationResult:
        table = await self.metadata.get_table(owner_id, table_id)
        if table is None:
            return TableOperationResult.failure(f"Table {table_id} not found")

        result = await self.rows.delete_row(table, row_identifier)
        return self._row_result(table, row_identifier, result)

    def _row_result(self, table: LogicalTable, row_identifier: int, result) -> TableOperationResult:
        if result.success and result.affected_rows == 0:
            return TableOperationResult.failure(f"Row {row_identifier} not found", table=table)
        return TableOperationResult(
            success=result.success,
            message=result.message,
            table=table,
            executed_statements=result.executed_statements,
            row_identifier=row_identifier,
            affected_rows=result.affected_rows,
        )
