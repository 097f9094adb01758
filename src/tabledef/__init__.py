"""
tabledef: dynamic schema engine for user-defined tables.

Users describe tables as a name plus typed columns; tabledef materializes
each definition as a real PostgreSQL table, evolves it safely as the
definition changes and performs row-level CRUD against it.
"""

__version__ = "0.1.0"

from .config import TabledefConfig
from .exceptions import (
    TabledefError,
    ConfigurationError,
    DatabaseError,
    DdlExecutionError,
    UnsupportedTypeError,
)

__all__ = [
    "__version__",
    "TabledefConfig",
    "TabledefError",
    "ConfigurationError",
    "DatabaseError",
    "DdlExecutionError",
    "UnsupportedTypeError",
]
