"""
Schema package for tabledef.

This package provides:
- Identifier sanitizing and the physical naming scheme
- Logical types and the conversion compatibility matrix
- Logical table model and request validation
- Validation engine, DDL executor, row DML, metadata store and reconciler
  (import those from their modules)
"""

from .naming import derive_physical_name, sanitize_identifier, quote_identifier
from .types import LogicalType
from .compatibility import can_convert, is_lossy, requires_confirmation
from .models import (
    LogicalTable,
    LogicalColumn,
    ColumnDefinition,
    ColumnUpdate,
    CreateTableRequest,
    UpdateTableRequest,
)

__all__ = [
    "derive_physical_name",
    "sanitize_identifier",
    "quote_identifier",
    "LogicalType",
    "can_convert",
    "is_lossy",
    "requires_confirmation",
    "LogicalTable",
    "LogicalColumn",
    "ColumnDefinition",
    "ColumnUpdate",
    "CreateTableRequest",
    "UpdateTableRequest",
]
