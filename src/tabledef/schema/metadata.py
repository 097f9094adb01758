"""
Metadata store for tabledef.

Keeps the logical record of every user-defined table and its columns in
two tables under a dedicated schema. Mutating methods accept the caller's
connection so the logical record and the physical DDL commit together.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import MetadataError
from .models import LogicalColumn, LogicalTable
from .naming import quote_identifier


logger = logging.getLogger(__name__)

TABLES_TABLE = "custom_tables"
COLUMNS_TABLE = "custom_columns"


class MetadataManager:
    """Reads and writes the logical table definitions."""

    def __init__(self, pool: ConnectionPool, metadata_schema: str = "tabledef_metadata"):
        self.pool = pool
        self.metadata_schema = metadata_schema
        self.introspector = SchemaIntrospector(pool)

        self.required_tables = {
            TABLES_TABLE: self._get_tables_ddl(),
            COLUMNS_TABLE: self._get_columns_ddl(),
        }

    def _t(self, table: str) -> str:
        return f"{quote_identifier(self.metadata_schema)}.{quote_identifier(table)}"

    @asynccontextmanager
    async def _connection(self, conn=None) -> AsyncIterator[Any]:
        if conn is not None:
            yield conn
        else:
            async with self.pool.acquire() as acquired:
                yield acquired

    async def setup_metadata_schema(self) -> Dict[str, Any]:
        """Create the metadata schema and tables; safe to run repeatedly."""
        results = {
            "schemas_created": [],
            "tables_created": [],
            "errors": [],
        }

        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(self.metadata_schema)}"
                )
                results["schemas_created"].append(self.metadata_schema)
            except Exception as e:
                error_msg = f"Failed to create schema {self.metadata_schema}: {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)
                return results

            for table_name, ddl in self.required_tables.items():
                try:
                    await conn.execute(ddl)
                    results["tables_created"].append(f"{self.metadata_schema}.{table_name}")
                except Exception as e:
                    error_msg = f"Failed to create table {table_name}: {e}"
                    logger.error(error_msg)
                    results["errors"].append(error_msg)

        logger.info(f"Metadata schema setup completed: {len(results['errors'])} errors")
        return results

    async def check_metadata_integrity(self) -> Dict[str, Any]:
        """Report which metadata tables exist."""
        report = {"tables_exist": {}, "missing_components": [], "is_healthy": True}

        try:
            existing = await self.introspector.list_tables(self.metadata_schema)
        except Exception as e:
            logger.error(f"Metadata integrity check failed: {e}")
            return {"error": str(e), "is_healthy": False}

        for table_name in self.required_tables:
            exists = table_name in existing
            report["tables_exist"][table_name] = exists
            if not exists:
                report["missing_components"].append(f"table:{table_name}")
                report["is_healthy"] = False
        return report

    # Reads

    async def table_name_exists(
        self,
        owner_id: int,
        table_name: str,
        exclude_table_id: Optional[int] = None,
        conn=None,
    ) -> bool:
        """Case-insensitive check among the owner's non-deleted tables."""
        sql = f"""
            SELECT EXISTS (
                SELECT 1 FROM {self._t(TABLES_TABLE)}
                WHERE owner_id = $1 AND lower(table_name) = lower($2)
                AND NOT is_deleted AND id IS DISTINCT FROM $3
            )
        """
        try:
            async with self._connection(conn) as connection:
                return bool(await connection.fetchval(sql, owner_id, table_name.strip(), exclude_table_id))
        except Exception as e:
            logger.error(f"Error checking table name '{table_name}': {e}")
            raise MetadataError(f"Failed to check table name: {e}", cause=e) from e

    async def get_table(self, owner_id: int, table_id: int, conn=None) -> Optional[LogicalTable]:
        """A non-deleted table of ``owner_id`` with its columns, or None."""
        sql = f"""
            SELECT id, table_name, description, owner_id, is_deleted, created_at, updated_at
            FROM {self._t(TABLES_TABLE)}
            WHERE id = $1 AND owner_id = $2 AND NOT is_deleted
        """
        try:
            async with self._connection(conn) as connection:
                record = await connection.fetchrow(sql, table_id, owner_id)
                if record is None:
                    return None
                columns = await self._fetch_columns(connection, [table_id])
        except Exception as e:
            logger.error(f"Error loading table {table_id}: {e}")
            raise MetadataError(f"Failed to load table {table_id}: {e}", cause=e) from e

        return LogicalTable.from_record(record, columns.get(table_id, []))

    async def list_tables(
        self, owner_id: Optional[int] = None, include_deleted: bool = False, conn=None
    ) -> List[LogicalTable]:
        """Tables with their columns, optionally restricted to one owner."""
        conditions, params = [], []
        if owner_id is not None:
            params.append(owner_id)
            conditions.append(f"owner_id = ${len(params)}")
        if not include_deleted:
            conditions.append("NOT is_deleted")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        sql = f"""
            SELECT id, table_name, description, owner_id, is_deleted, created_at, updated_at
            FROM {self._t(TABLES_TABLE)}
            {where}
            ORDER BY owner_id, id
        """
        try:
            async with self._connection(conn) as connection:
                records = await connection.fetch(sql, *params)
                columns = await self._fetch_columns(connection, [r["id"] for r in records])
        except Exception as e:
            logger.error(f"Error listing tables: {e}")
            raise MetadataError(f"Failed to list tables: {e}", cause=e) from e

        return [LogicalTable.from_record(r, columns.get(r["id"], [])) for r in records]

    async def _fetch_columns(self, connection, table_ids: List[int]) -> Dict[int, List[LogicalColumn]]:
        if not table_ids:
            return {}
        sql = f"""
            SELECT id, table_id, column_name, data_type, is_required, display_order,
                   default_value, created_at, updated_at
            FROM {self._t(COLUMNS_TABLE)}
            WHERE table_id = ANY($1::int[])
            ORDER BY table_id, display_order
        """
        grouped: Dict[int, List[LogicalColumn]] = {}
        for record in await connection.fetch(sql, table_ids):
            grouped.setdefault(record["table_id"], []).append(LogicalColumn.from_record(record))
        return grouped

    # Writes

    async def insert_table(self, table: LogicalTable, conn=None) -> LogicalTable:
        """Insert a table and its columns; fills in generated ids and timestamps."""
        sql = f"""
            INSERT INTO {self._t(TABLES_TABLE)} (table_name, description, owner_id)
            VALUES ($1, $2, $3)
            RETURNING id, created_at, updated_at
        """
        try:
            async with self._connection(conn) as connection:
                record = await connection.fetchrow(sql, table.name, table.description, table.owner_id)
                table.id = record["id"]
                table.created_at = record["created_at"]
                table.updated_at = record["updated_at"]
                for column in table.columns:
                    await self.insert_column(table.id, column, connection)
        except MetadataError:
            raise
        except Exception as e:
            logger.error(f"Error inserting table '{table.name}': {e}")
            raise MetadataError(f"Failed to insert table: {e}", cause=e) from e

        logger.info(f"Recorded table '{table.name}' (id={table.id}) for owner {table.owner_id}")
        return table

    async def update_table_header(
        self, table_id: int, name: str, description: Optional[str], conn=None
    ) -> None:
        sql = f"""
            UPDATE {self._t(TABLES_TABLE)}
            SET table_name = $2, description = $3, updated_at = NOW()
            WHERE id = $1
        """
        await self._write(sql, (table_id, name, description), f"update table {table_id}", conn)

    async def soft_delete_table(self, table_id: int, conn=None) -> bool:
        sql = f"""
            UPDATE {self._t(TABLES_TABLE)}
            SET is_deleted = TRUE, updated_at = NOW()
            WHERE id = $1 AND NOT is_deleted
        """
        status = await self._write(sql, (table_id,), f"delete table {table_id}", conn)
        return status == "UPDATE 1"

    async def insert_column(self, table_id: int, column: LogicalColumn, conn=None) -> LogicalColumn:
        sql = f"""
            INSERT INTO {self._t(COLUMNS_TABLE)}
                (table_id, column_name, data_type, is_required, display_order, default_value)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id, created_at, updated_at
        """
        try:
            async with self._connection(conn) as connection:
                record = await connection.fetchrow(
                    sql, table_id, column.name, column.data_type.value,
                    column.is_required, column.display_order, column.default_value,
                )
        except Exception as e:
            logger.error(f"Error inserting column '{column.name}': {e}")
            raise MetadataError(f"Failed to insert column: {e}", cause=e) from e

        column.id = record["id"]
        column.table_id = table_id
        column.created_at = record["created_at"]
        column.updated_at = record["updated_at"]
        return column

    async def update_column(self, column: LogicalColumn, conn=None) -> None:
        sql = f"""
            UPDATE {self._t(COLUMNS_TABLE)}
            SET column_name = $2, data_type = $3, is_required = $4,
                display_order = $5, default_value = $6, updated_at = NOW()
            WHERE id = $1
        """
        params = (
            column.id, column.name, column.data_type.value,
            column.is_required, column.display_order, column.default_value,
        )
        await self._write(sql, params, f"update column {column.id}", conn)

    async def delete_column(self, column_id: int, conn=None) -> None:
        sql = f"DELETE FROM {self._t(COLUMNS_TABLE)} WHERE id = $1"
        await self._write(sql, (column_id,), f"delete column {column_id}", conn)

    async def _write(self, sql: str, params: tuple, action: str, conn=None) -> str:
        try:
            async with self._connection(conn) as connection:
                return await connection.execute(sql, *params)
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            raise MetadataError(f"Failed to {action}: {e}", cause=e) from e

    # DDL definitions for metadata tables

    def _get_tables_ddl(self) -> str:
        table = self._t(TABLES_TABLE)
        return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id SERIAL PRIMARY KEY,
            table_name VARCHAR(50) NOT NULL,
            description VARCHAR(500),
            owner_id INTEGER NOT NULL,
            is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_custom_tables_owner_name
        ON {table} (owner_id, lower(table_name))
        WHERE NOT is_deleted;
        """

    def _get_columns_ddl(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self._t(COLUMNS_TABLE)} (
            id SERIAL PRIMARY KEY,
            table_id INTEGER NOT NULL REFERENCES {self._t(TABLES_TABLE)}(id) ON DELETE CASCADE,
            column_name VARCHAR(50) NOT NULL,
            data_type VARCHAR(20) NOT NULL,
            is_required BOOLEAN NOT NULL DEFAULT FALSE,
            display_order INTEGER NOT NULL CHECK (display_order BETWEEN 1 AND 999),
            default_value VARCHAR(255),
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_custom_columns_table
        ON {self._t(COLUMNS_TABLE)} (table_id);
        """
