"""
Physical schema introspection for tabledef.

Answers questions about the physical tables as they exist right now:
whether a table or column exists, how many rows it holds, whether a
column carries data or NULLs and which text values would not survive a
type conversion. Every call goes to the database; nothing is cached.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .connection import ConnectionPool
from ..exceptions import DatabaseError, SchemaError
from ..schema.compatibility import VALUE_PATTERNS
from ..schema.naming import qualified_name, quote_identifier
from ..schema.types import LogicalType, from_physical_type


logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    """Information about a physical column."""

    name: str
    data_type: str
    is_nullable: bool
    default_value: Optional[str] = None
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    ordinal_position: int = 0

    @property
    def logical_type(self) -> Optional[LogicalType]:
        """Logical type this column maps back to, if any."""
        return from_physical_type(self.data_type)

    def __str__(self) -> str:
        result = f"{self.name} {self.data_type}"
        if self.max_length:
            result += f"({self.max_length})"
        if not self.is_nullable:
            result += " NOT NULL"
        if self.default_value:
            result += f" DEFAULT {self.default_value}"
        return result


class SchemaIntrospector:
    """Database schema introspection utilities."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    async def table_exists(self, schema: str, table: str) -> bool:
        """Check if a table exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = $1 AND table_name = $2
            )
        """

        try:
            result = await self.pool.fetchval(query, schema, table)
            return bool(result)
        except Exception as e:
            logger.error(f"Error checking table existence for {schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check table existence: {e}") from e

    async def has_column(self, schema: str, table: str, column: str) -> bool:
        """Check if a table has a column with exactly this name."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.columns
                WHERE table_schema = $1 AND table_name = $2 AND column_name = $3
            )
        """

        try:
            result = await self.pool.fetchval(query, schema, table, column)
            return bool(result)
        except Exception as e:
            logger.error(f"Error checking column {column} on {schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check column existence: {e}") from e

    async def get_columns(self, schema: str, table: str) -> Dict[str, ColumnInfo]:
        """Get all columns for a table."""
        query = """
            SELECT
                c.column_name,
                c.data_type,
                c.is_nullable,
                c.column_default,
                c.character_maximum_length,
                c.numeric_precision,
                c.numeric_scale,
                c.ordinal_position
            FROM information_schema.columns c
            WHERE c.table_schema = $1 AND c.table_name = $2
            ORDER BY c.ordinal_position
        """

        try:
            rows = await self.pool.fetch(query, schema, table)
            columns = {}

            for row in rows:
                col_info = ColumnInfo(
                    name=row["column_name"],
                    data_type=row["data_type"],
                    is_nullable=row["is_nullable"] == "YES",
                    default_value=row["column_default"],
                    max_length=row["character_maximum_length"],
                    numeric_precision=row["numeric_precision"],
                    numeric_scale=row["numeric_scale"],
                    ordinal_position=row["ordinal_position"],
                )
                columns[col_info.name] = col_info

            return columns

        except Exception as e:
            logger.error(f"Error getting columns for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get columns: {e}") from e

    async def list_tables(self, schema: str, prefix: Optional[str] = None) -> List[str]:
        """List base tables of a schema, optionally only those starting with ``prefix``."""
        if prefix:
            query = """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = $1
                AND table_type = 'BASE TABLE'
                AND left(table_name, length($2)) = $2
                ORDER BY table_name
            """
            rows = await self.pool.fetch(query, schema, prefix)
        else:
            query = """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = $1
                AND table_type = 'BASE TABLE'
                ORDER BY table_name
            """
            rows = await self.pool.fetch(query, schema)

        return [row["table_name"] for row in rows]

    async def row_count(self, schema: str, table: str) -> int:
        """Exact number of rows in a table."""
        query = f"SELECT COUNT(*) FROM {qualified_name(schema, table)}"

        try:
            return int(await self.pool.fetchval(query) or 0)
        except Exception as e:
            logger.error(f"Error counting rows of {schema}.{table}: {e}")
            raise DatabaseError(f"Failed to count rows: {e}") from e

    async def column_has_data(self, schema: str, table: str, column: str) -> bool:
        """True when at least one row has a non-NULL value in ``column``."""
        query = (
            f"SELECT EXISTS (SELECT 1 FROM {qualified_name(schema, table)} "
            f"WHERE {quote_identifier(column)} IS NOT NULL)"
        )

        try:
            return bool(await self.pool.fetchval(query))
        except Exception as e:
            logger.error(f"Error probing data in {schema}.{table}.{column}: {e}")
            raise DatabaseError(f"Failed to check column data: {e}") from e

    async def count_null_values(self, schema: str, table: str, column: str) -> int:
        """Number of rows where ``column`` is NULL."""
        query = (
            f"SELECT COUNT(*) FROM {qualified_name(schema, table)} "
            f"WHERE {quote_identifier(column)} IS NULL"
        )

        try:
            return int(await self.pool.fetchval(query) or 0)
        except Exception as e:
            logger.error(f"Error counting NULLs in {schema}.{table}.{column}: {e}")
            raise DatabaseError(f"Failed to count NULL values: {e}") from e

    async def count_unconvertible_values(
        self, schema: str, table: str, column: str, target_type: LogicalType
    ) -> int:
        """
        Count non-empty text values that would not parse as ``target_type``.

        Only meaningful for text columns; other targets return 0.
        """
        pattern = VALUE_PATTERNS.get(target_type)
        if pattern is None:
            return 0

        column_sql = quote_identifier(column)
        query = (
            f"SELECT COUNT(*) FROM {qualified_name(schema, table)} "
            f"WHERE {column_sql} IS NOT NULL AND btrim({column_sql}) <> '' "
            f"AND btrim({column_sql}) !~ $1"
        )

        try:
            return int(await self.pool.fetchval(query, pattern) or 0)
        except Exception as e:
            logger.error(f"Error checking values of {schema}.{table}.{column}: {e}")
            raise DatabaseError(f"Failed to check column values: {e}") from e

    async def estimate_table_size(self, schema: str, table: str) -> int:
        """Total on-disk size of a table in bytes, 0 when it does not exist."""
        query = "SELECT COALESCE(pg_total_relation_size(to_regclass($1)), 0)"

        try:
            return int(await self.pool.fetchval(query, qualified_name(schema, table)) or 0)
        except Exception as e:
            logger.warning(f"Could not estimate size of {schema}.{table}: {e}")
            return 0
