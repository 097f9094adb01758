"""
Row-level DML against physical tables.

Values are always bound as parameters. Identifiers cannot be bound, so
every table and column name passes through the sanitizer before it is
interpolated.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import DdlExecutionError
from .models import LogicalTable
from .naming import ID_COLUMN, ROW_IDENTIFIER_COLUMN, qualified_name, quote_identifier
from .operations import DdlOperationResult, status_row_count
from .types import coerce_value


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowFilter:
    """Equality filter on a single column; ``None`` matches NULL."""

    column: str
    value: Any

    def to_sql(self, position: int) -> Tuple[str, List[Any]]:
        """WHERE clause text and its parameters, numbering from ``$position``."""
        column_sql = quote_identifier(self.column)
        if self.value is None:
            return f"{column_sql} IS NULL", []
        return f"{column_sql} = ${position}", [self.value]


class RowOperations:
    """Insert, read, update and delete rows of physical tables."""

    def __init__(self, pool: ConnectionPool, physical_schema: str = "public"):
        self.pool = pool
        self.physical_schema = physical_schema
        self.introspector = SchemaIntrospector(pool)

    @asynccontextmanager
    async def _connection(self, conn=None) -> AsyncIterator[Any]:
        if conn is not None:
            yield conn
        else:
            async with self.pool.acquire() as acquired:
                yield acquired

    def _bind_values(
        self, table: LogicalTable, values: Mapping[str, Any]
    ) -> Tuple[List[str], List[Any]]:
        """Quoted column names and coerced values for the known columns in ``values``."""
        columns, params = [], []
        for key, raw in values.items():
            column = table.find_column(key)
            if column is None:
                logger.warning(f"Ignoring unknown column '{key}' for table {table.physical_name}")
                continue
            try:
                params.append(coerce_value(raw, column.data_type))
            except ValueError as e:
                raise ValueError(f"Invalid value for column '{column.name}': {e}") from e
            columns.append(quote_identifier(column.name))
        return columns, params

    def _filter_value(self, table: LogicalTable, row_filter: RowFilter) -> RowFilter:
        if row_filter.value is None:
            return row_filter
        if row_filter.column in (ID_COLUMN, ROW_IDENTIFIER_COLUMN):
            try:
                return RowFilter(row_filter.column, int(row_filter.value))
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid {row_filter.column} '{row_filter.value}'") from e
        column = table.find_column(row_filter.column)
        if column is None:
            raise ValueError(f"Unknown filter column '{row_filter.column}'")
        return RowFilter(column.name, coerce_value(row_filter.value, column.data_type))

    async def insert_row(
        self, table: LogicalTable, values: Mapping[str, Any], conn=None
    ) -> DdlOperationResult:
        """
        Insert one row and assign the next RowIdentifier.

        The identifier is computed by the INSERT itself as the current
        maximum plus one.
        """
        physical = table.physical_name
        try:
            columns, params = self._bind_values(table, values)
        except ValueError as e:
            return DdlOperationResult.failure(str(e))

        table_sql = qualified_name(self.physical_schema, physical)
        row_id = quote_identifier(ROW_IDENTIFIER_COLUMN)
        next_id = f"(SELECT COALESCE(MAX({row_id}), 0) + 1 FROM {table_sql})"
        placeholders = [f"${i}" for i in range(1, len(params) + 1)]

        sql = (
            f"INSERT INTO {table_sql} ({', '.join([row_id] + columns)}) "
            f"VALUES ({', '.join([next_id] + placeholders)}) "
            f"RETURNING {row_id}"
        )

        try:
            async with self._connection(conn) as connection:
                row_identifier = await connection.fetchval(sql, *params)
        except Exception as e:
            error = DdlExecutionError(f"Failed to insert row into {physical}: {e}", sql, e)
            logger.error(str(error))
            return DdlOperationResult.failure(error.message)

        logger.debug(f"Inserted row {row_identifier} into {physical}")
        return DdlOperationResult(
            success=True,
            message=f"Row {row_identifier} inserted",
            executed_statements=[sql],
            affected_rows=1,
            row_identifier=row_identifier,
        )

    async def select_all_rows(self, physical_name: str) -> List[Dict[str, Any]]:
        """All rows of a physical table as dicts; empty on any failure."""
        table_sql = qualified_name(self.physical_schema, physical_name)
        try:
            sql = f"SELECT * FROM {table_sql}"
            if await self.introspector.has_column(
                self.physical_schema, physical_name, ROW_IDENTIFIER_COLUMN
            ):
                sql += f" ORDER BY {quote_identifier(ROW_IDENTIFIER_COLUMN)}"
            rows = await self.pool.fetch(sql)
        except Exception as e:
            logger.error(f"Failed to read rows of {physical_name}: {e}")
            return []
        return [dict(row) for row in rows]

    async def update_row_by(
        self,
        table: LogicalTable,
        values: Mapping[str, Any],
        row_filter: RowFilter,
        conn=None,
    ) -> DdlOperationResult:
        physical = table.physical_name
        try:
            columns, params = self._bind_values(table, values)
            row_filter = self._filter_value(table, row_filter)
        except ValueError as e:
            return DdlOperationResult.failure(str(e))
        if not columns:
            return DdlOperationResult.failure("No known columns to update")

        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        where, filter_params = row_filter.to_sql(len(params) + 1)
        sql = (
            f"UPDATE {qualified_name(self.physical_schema, physical)} "
            f"SET {assignments} WHERE {where}"
        )
        return await self._execute(sql, params + filter_params, f"update rows of {physical}", conn)

    async def delete_row_by(
        self, physical_name: str, row_filter: RowFilter, conn=None
    ) -> DdlOperationResult:
        where, params = row_filter.to_sql(1)
        sql = f"DELETE FROM {qualified_name(self.physical_schema, physical_name)} WHERE {where}"
        return await self._execute(sql, params, f"delete rows of {physical_name}", conn)

    async def update_row(
        self, table: LogicalTable, row_identifier: int, values: Mapping[str, Any], conn=None
    ) -> DdlOperationResult:
        return await self.update_row_by(
            table, values, RowFilter(ROW_IDENTIFIER_COLUMN, row_identifier), conn
        )

    async def delete_row(
        self, table: LogicalTable, row_identifier: int, conn=None
    ) -> DdlOperationResult:
        try:
            row_filter = self._filter_value(table, RowFilter(ROW_IDENTIFIER_COLUMN, row_identifier))
        except ValueError as e:
            return DdlOperationResult.failure(str(e))
        return await self.delete_row_by(table.physical_name, row_filter, conn)

    async def _execute(
        self, sql: str, params: List[Any], action: str, conn=None
    ) -> DdlOperationResult:
        try:
            async with self._connection(conn) as connection:
                status = await connection.execute(sql, *params)
        except Exception as e:
            error = DdlExecutionError(f"Failed to {action}: {e}", sql, e)
            logger.error(str(error))
            return DdlOperationResult.failure(error.message)

        affected = status_row_count(status)
        return DdlOperationResult(
            success=True,
            message=f"{affected} rows affected" if affected else "No matching rows",
            executed_statements=[sql],
            affected_rows=affected,
        )
