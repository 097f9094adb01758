"""
Database integration package for tabledef.

This package provides:
- Async PostgreSQL connection pooling
- Physical schema introspection
"""

from .connection import ConnectionConfig, ConnectionPool
from .introspection import SchemaIntrospector, ColumnInfo

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "SchemaIntrospector",
    "ColumnInfo",
]
