"""
DDL executor for tabledef.

Turns logical table and column definitions into PostgreSQL DDL. Every
statement is first described as a :class:`SchemaChange` and then run
through a single execution path, so a batch of changes shares one
transaction and a dry run can report exactly what would have been
executed.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence

from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import DatabaseError, DdlExecutionError
from .compatibility import using_expression
from .models import LogicalColumn
from .naming import (
    ID_COLUMN,
    ROW_IDENTIFIER_COLUMN,
    backup_table_name,
    derive_physical_name,
    is_exact_identifier,
    qualified_name,
    quote_identifier,
)
from .types import LogicalType, format_default_literal, to_physical_type, zero_literal


logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Types of schema changes."""

    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    RENAME_TABLE = "rename_table"
    CREATE_BACKUP = "create_backup"
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    RENAME_COLUMN = "rename_column"
    ALTER_COLUMN_TYPE = "alter_column_type"
    SET_NULLABILITY = "set_nullability"
    SET_DEFAULT = "set_default"


class OperationMode(str, Enum):
    """Schema operation modes."""

    EXECUTE = "execute"        # Run statements against the database
    DRY_RUN = "dry_run"        # Generate SQL but don't execute


@dataclass
class SchemaChange:
    """One logical schema change and the statements that perform it."""

    change_type: ChangeType
    schema: str
    table: str
    description: str
    sql_commands: List[str] = field(default_factory=list)
    target_object: Optional[str] = None
    is_destructive: bool = False

    # Execution results
    executed: bool = False
    execution_time_ms: Optional[float] = None
    affected_rows: int = 0
    error: Optional[str] = None

    @property
    def change_id(self) -> str:
        target = self.target_object or self.table
        return f"{self.change_type.value}_{self.schema}_{target}"


@dataclass
class DdlOperationResult:
    """Outcome of a DDL or DML operation."""

    success: bool
    message: str = ""
    executed_statements: List[str] = field(default_factory=list)
    affected_rows: int = 0
    validation_result: Optional[Any] = None
    backup_created: bool = False
    backup_table: Optional[str] = None
    row_identifier: Optional[int] = None
    changes: List[SchemaChange] = field(default_factory=list)

    @classmethod
    def failure(cls, message: str, **kwargs) -> "DdlOperationResult":
        return cls(success=False, message=message, **kwargs)


def status_row_count(status: Any) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 3``."""
    if not isinstance(status, str):
        return 0
    parts = status.split()
    if parts and parts[0] in ("INSERT", "UPDATE", "DELETE", "SELECT") and parts[-1].isdigit():
        return int(parts[-1])
    return 0


class DdlExecutor:
    """Builds and executes DDL for the physical tables behind logical tables."""

    def __init__(
        self,
        pool: ConnectionPool,
        physical_schema: str = "public",
        operation_mode: OperationMode = OperationMode.EXECUTE,
    ):
        self.pool = pool
        self.physical_schema = physical_schema
        self.operation_mode = operation_mode
        self.introspector = SchemaIntrospector(pool)

    def _table_sql(self, physical_name: str) -> str:
        return qualified_name(self.physical_schema, physical_name)

    # Statement builders

    def build_column_definition(self, column: LogicalColumn) -> str:
        """``"name" TYPE [NOT NULL] [DEFAULT literal]`` for one logical column."""
        parts = [quote_identifier(column.name), to_physical_type(column.data_type)]
        if column.is_required:
            parts.append("NOT NULL")
        if column.has_default:
            parts.append(f"DEFAULT {format_default_literal(column.default_value, column.data_type)}")
        return " ".join(parts)

    def build_create_table_sql(self, physical_name: str, columns: Sequence[LogicalColumn]) -> str:
        definitions = [
            f"{quote_identifier(ID_COLUMN)} SERIAL PRIMARY KEY",
            f"{quote_identifier(ROW_IDENTIFIER_COLUMN)} INTEGER NOT NULL UNIQUE",
        ]
        definitions.extend(
            self.build_column_definition(c)
            for c in sorted(columns, key=lambda c: c.display_order)
        )
        body = ",\n    ".join(definitions)
        return f"CREATE TABLE {self._table_sql(physical_name)} (\n    {body}\n)"

    def create_table_change(
        self, physical_name: str, columns: Sequence[LogicalColumn]
    ) -> SchemaChange:
        return SchemaChange(
            change_type=ChangeType.CREATE_TABLE,
            schema=self.physical_schema,
            table=physical_name,
            description=f"create table {physical_name}",
            sql_commands=[self.build_create_table_sql(physical_name, columns)],
        )

    def drop_table_change(self, physical_name: str) -> SchemaChange:
        return SchemaChange(
            change_type=ChangeType.DROP_TABLE,
            schema=self.physical_schema,
            table=physical_name,
            description=f"drop table {physical_name}",
            sql_commands=[f"DROP TABLE IF EXISTS {self._table_sql(physical_name)}"],
            is_destructive=True,
        )

    def rename_table_change(self, old_physical: str, new_physical: str) -> SchemaChange:
        return SchemaChange(
            change_type=ChangeType.RENAME_TABLE,
            schema=self.physical_schema,
            table=old_physical,
            description=f"rename table {old_physical} to {new_physical}",
            sql_commands=[
                f"ALTER TABLE {self._table_sql(old_physical)} "
                f"RENAME TO {quote_identifier(new_physical)}"
            ],
            target_object=new_physical,
        )

    def backup_change(self, physical_name: str, backup_name: str) -> SchemaChange:
        return SchemaChange(
            change_type=ChangeType.CREATE_BACKUP,
            schema=self.physical_schema,
            table=physical_name,
            description=f"back up {physical_name} to {backup_name}",
            sql_commands=[
                f"CREATE TABLE {self._table_sql(backup_name)} AS "
                f"SELECT * FROM {self._table_sql(physical_name)}"
            ],
            target_object=backup_name,
        )

    def add_column_change(
        self, physical_name: str, column: LogicalColumn, force: bool = False
    ) -> SchemaChange:
        """
        ADD COLUMN for one logical column.

        A forced required column without a default is added with the type's
        zero value as a temporary default so existing rows get a value, and
        the default is dropped again in the same change.
        """
        table_sql = self._table_sql(physical_name)
        column_sql = quote_identifier(column.name)

        if force and column.is_required and not column.has_default:
            physical_type = to_physical_type(column.data_type)
            sql_commands = [
                f"ALTER TABLE {table_sql} ADD COLUMN {column_sql} {physical_type} "
                f"NOT NULL DEFAULT {zero_literal(column.data_type)}",
                f"ALTER TABLE {table_sql} ALTER COLUMN {column_sql} DROP DEFAULT",
            ]
        else:
            sql_commands = [
                f"ALTER TABLE {table_sql} ADD COLUMN {self.build_column_definition(column)}"
            ]

        return SchemaChange(
            change_type=ChangeType.ADD_COLUMN,
            schema=self.physical_schema,
            table=physical_name,
            description=f"add column {column.name}",
            sql_commands=sql_commands,
            target_object=column.name,
        )

    def drop_column_change(self, physical_name: str, column_name: str) -> SchemaChange:
        return SchemaChange(
            change_type=ChangeType.DROP_COLUMN,
            schema=self.physical_schema,
            table=physical_name,
            description=f"drop column {column_name}",
            sql_commands=[
                f"ALTER TABLE {self._table_sql(physical_name)} "
                f"DROP COLUMN IF EXISTS {quote_identifier(column_name)}"
            ],
            target_object=column_name,
            is_destructive=True,
        )

    def rename_column_change(
        self, physical_name: str, old_name: str, new_name: str
    ) -> SchemaChange:
        table_sql = self._table_sql(physical_name)
        return SchemaChange(
            change_type=ChangeType.RENAME_COLUMN,
            schema=self.physical_schema,
            table=physical_name,
            description=f"rename column {old_name} to {new_name}",
            sql_commands=[
                f"ALTER TABLE {table_sql} RENAME COLUMN "
                f"{quote_identifier(old_name)} TO {quote_identifier(new_name)}"
            ],
            target_object=new_name,
        )

    def alter_column_type_change(
        self,
        physical_name: str,
        column_name: str,
        from_type: LogicalType,
        to_type: LogicalType,
        had_default: bool = False,
        new_default: Optional[str] = None,
    ) -> SchemaChange:
        """
        ALTER COLUMN ... TYPE with the conversion's USING expression.

        PostgreSQL casts an attached default to the new type and has no
        cast from text to the other types, so an existing default is
        dropped first and ``new_default`` is set after the conversion.
        """
        alter_sql = f"ALTER TABLE {self._table_sql(physical_name)} ALTER COLUMN "
        column_sql = quote_identifier(column_name)
        sql = f"{alter_sql}{column_sql} TYPE {to_physical_type(to_type)}"
        using = using_expression(column_sql, from_type, to_type)
        if using:
            sql += f" USING {using}"

        sql_commands = [sql]
        if had_default:
            sql_commands.insert(0, f"{alter_sql}{column_sql} DROP DEFAULT")
        if new_default:
            literal = format_default_literal(new_default, to_type)
            sql_commands.append(f"{alter_sql}{column_sql} SET DEFAULT {literal}")

        return SchemaChange(
            change_type=ChangeType.ALTER_COLUMN_TYPE,
            schema=self.physical_schema,
            table=physical_name,
            description=f"change type of {column_name} from {from_type.value} to {to_type.value}",
            sql_commands=sql_commands,
            target_object=column_name,
        )

    def nullability_change(
        self,
        physical_name: str,
        column_name: str,
        required: bool,
        fill_literal: Optional[str] = None,
    ) -> SchemaChange:
        """SET/DROP NOT NULL, backfilling NULLs with ``fill_literal`` first."""
        table_sql = self._table_sql(physical_name)
        column_sql = quote_identifier(column_name)
        sql_commands = []

        if required:
            if fill_literal is not None:
                sql_commands.append(
                    f"UPDATE {table_sql} SET {column_sql} = {fill_literal} "
                    f"WHERE {column_sql} IS NULL"
                )
            sql_commands.append(f"ALTER TABLE {table_sql} ALTER COLUMN {column_sql} SET NOT NULL")
        else:
            sql_commands.append(f"ALTER TABLE {table_sql} ALTER COLUMN {column_sql} DROP NOT NULL")

        return SchemaChange(
            change_type=ChangeType.SET_NULLABILITY,
            schema=self.physical_schema,
            table=physical_name,
            description=f"make column {column_name} {'required' if required else 'optional'}",
            sql_commands=sql_commands,
            target_object=column_name,
        )

    def default_change(
        self,
        physical_name: str,
        column_name: str,
        data_type: LogicalType,
        default_value: Optional[str],
    ) -> SchemaChange:
        table_sql = self._table_sql(physical_name)
        column_sql = quote_identifier(column_name)
        if default_value:
            literal = format_default_literal(default_value, data_type)
            sql = f"ALTER TABLE {table_sql} ALTER COLUMN {column_sql} SET DEFAULT {literal}"
        else:
            sql = f"ALTER TABLE {table_sql} ALTER COLUMN {column_sql} DROP DEFAULT"

        return SchemaChange(
            change_type=ChangeType.SET_DEFAULT,
            schema=self.physical_schema,
            table=physical_name,
            description=f"change default of column {column_name}",
            sql_commands=[sql],
            target_object=column_name,
        )

    # Execution

    async def apply_changes(
        self, changes: Sequence[SchemaChange], conn=None
    ) -> DdlOperationResult:
        """
        Execute ``changes`` atomically.

        Runs in a new transaction on a pooled connection, or in a savepoint
        when ``conn`` is supplied by a caller that already opened one. Any
        failure rolls back every change of the batch.
        """
        changes = list(changes)
        statements = [sql for change in changes for sql in change.sql_commands]

        if self.operation_mode == OperationMode.DRY_RUN:
            for change in changes:
                logger.info(f"DRY RUN: Would execute {change.change_id}")
                for sql in change.sql_commands:
                    logger.info(f"SQL: {sql}")
            return DdlOperationResult(
                success=True,
                message=f"Dry run: {len(statements)} statements not executed",
                executed_statements=statements,
                changes=changes,
            )

        try:
            if conn is None:
                async with self.pool.acquire() as conn:
                    async with conn.transaction():
                        await self._run_changes(conn, changes)
            else:
                async with conn.transaction():
                    await self._run_changes(conn, changes)
        except DdlExecutionError as e:
            return self._failed(changes, e)
        except Exception as e:
            # Connection failures and errors raised while committing
            return self._failed(
                changes, DdlExecutionError(f"Schema change failed: {e}", cause=e)
            )

        return DdlOperationResult(
            success=True,
            message=f"Executed {len(statements)} statements",
            executed_statements=statements,
            affected_rows=sum(c.affected_rows for c in changes),
            changes=changes,
        )

    def _failed(self, changes: List[SchemaChange], error: DdlExecutionError) -> DdlOperationResult:
        logger.error(f"Schema change failed and was rolled back: {error}")
        for change in changes:
            change.executed = False
        return DdlOperationResult.failure(error.message, executed_statements=[], changes=changes)

    async def _run_changes(self, conn, changes: Sequence[SchemaChange]) -> None:
        for change in changes:
            if change.is_destructive:
                logger.warning(f"Executing destructive change {change.change_id}")
            start_time = time.time()
            for sql in change.sql_commands:
                try:
                    status = await conn.execute(sql)
                except Exception as e:
                    change.error = str(e)
                    raise DdlExecutionError(
                        f"Failed to {change.description}: {e}", statement=sql, cause=e
                    ) from e
                change.affected_rows += status_row_count(status)
            change.executed = True
            change.execution_time_ms = (time.time() - start_time) * 1000
            logger.info(f"Successfully executed {change.change_id}")

    # Public operations

    async def create_physical_table(
        self, logical_name: str, owner_id: int, columns: Sequence[LogicalColumn], conn=None
    ) -> DdlOperationResult:
        """CREATE TABLE for a logical table. Not idempotent."""
        physical_name = derive_physical_name(logical_name, owner_id)
        return await self.apply_changes([self.create_table_change(physical_name, columns)], conn)

    async def drop_physical_table(
        self, logical_name: str, owner_id: int, conn=None
    ) -> DdlOperationResult:
        """DROP TABLE IF EXISTS; dropping an absent table succeeds."""
        physical_name = derive_physical_name(logical_name, owner_id)
        return await self.apply_changes([self.drop_table_change(physical_name)], conn)

    async def add_column(
        self, physical_name: str, column: LogicalColumn, force: bool = False, conn=None
    ) -> DdlOperationResult:
        if not is_exact_identifier(column.name):
            return DdlOperationResult.failure(
                f"Column name '{column.name}' contains characters that are not allowed"
            )
        return await self.apply_changes(
            [self.add_column_change(physical_name, column, force)], conn
        )

    async def drop_column(
        self, physical_name: str, column_name: str, conn=None
    ) -> DdlOperationResult:
        return await self.apply_changes([self.drop_column_change(physical_name, column_name)], conn)

    async def rename_column(
        self, physical_name: str, old_name: str, new_name: str, conn=None
    ) -> DdlOperationResult:
        if not is_exact_identifier(new_name):
            return DdlOperationResult.failure(
                f"Column name '{new_name}' contains characters that are not allowed"
            )
        if old_name == new_name:
            return DdlOperationResult(success=True, message="Column name unchanged")
        return await self.apply_changes(
            [self.rename_column_change(physical_name, old_name, new_name)], conn
        )

    async def alter_column_type(
        self,
        physical_name: str,
        column_name: str,
        from_type: LogicalType,
        to_type: LogicalType,
        had_default: bool = False,
        new_default: Optional[str] = None,
        conn=None,
    ) -> DdlOperationResult:
        if from_type == to_type:
            return DdlOperationResult(success=True, message="Column type unchanged")
        change = self.alter_column_type_change(
            physical_name, column_name, from_type, to_type, had_default, new_default
        )
        return await self.apply_changes([change], conn)

    async def set_column_nullability(
        self,
        physical_name: str,
        column_name: str,
        required: bool,
        fill_literal: Optional[str] = None,
        conn=None,
    ) -> DdlOperationResult:
        return await self.apply_changes(
            [self.nullability_change(physical_name, column_name, required, fill_literal)], conn
        )

    async def set_column_default(
        self,
        physical_name: str,
        column_name: str,
        data_type: LogicalType,
        default_value: Optional[str],
        conn=None,
    ) -> DdlOperationResult:
        return await self.apply_changes(
            [self.default_change(physical_name, column_name, data_type, default_value)], conn
        )

    async def create_backup_table(
        self, logical_name: str, owner_id: int, conn=None
    ) -> DdlOperationResult:
        """Copy the physical table into a timestamped backup table."""
        physical_name = derive_physical_name(logical_name, owner_id)
        backup_name = backup_table_name(physical_name)
        result = await self.apply_changes([self.backup_change(physical_name, backup_name)], conn)

        if result.success and self.operation_mode == OperationMode.EXECUTE:
            result.backup_created = True
            result.backup_table = backup_name
            result.message = f"Backup table {backup_name} created"
            logger.info(f"Created backup {backup_name} of {physical_name}")
        return result

    async def rename_physical_table(
        self, old_logical_name: str, new_logical_name: str, owner_id: int, conn=None
    ) -> bool:
        """
        Rename the physical table after a logical rename.

        Returns False without touching anything when the source table is
        missing or the destination name is already taken.
        """
        old_physical = derive_physical_name(old_logical_name, owner_id)
        new_physical = derive_physical_name(new_logical_name, owner_id)
        if old_physical == new_physical:
            return True

        try:
            source_exists = await self.introspector.table_exists(self.physical_schema, old_physical)
            target_exists = await self.introspector.table_exists(self.physical_schema, new_physical)
        except DatabaseError as e:
            logger.error(f"Cannot rename {old_physical}: {e}")
            return False

        if not source_exists:
            logger.warning(f"Cannot rename {old_physical}: table does not exist")
            return False
        if target_exists:
            logger.warning(f"Cannot rename {old_physical}: {new_physical} already exists")
            return False

        result = await self.apply_changes(
            [self.rename_table_change(old_physical, new_physical)], conn
        )
        return result.success
