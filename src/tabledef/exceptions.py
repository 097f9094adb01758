"""
Exception classes for tabledef.
"""

from typing import Any, Dict, Optional


class TabledefError(Exception):
    """Base exception for all tabledef errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(TabledefError):
    """Raised when there's an error in configuration."""

    pass


class ValidationError(TabledefError):
    """Raised when a proposed schema change is unsafe or impossible."""

    pass


class DatabaseError(TabledefError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when there's an error establishing or maintaining database connections."""

    pass


class DatabaseConfigurationError(DatabaseError):
    """Raised when there's an error in database configuration."""

    pass


class SchemaError(DatabaseError):
    """Raised when there's an error with database schema operations."""

    pass


class DdlExecutionError(SchemaError):
    """Raised when the backend rejects a DDL or DML statement."""

    def __init__(
        self,
        message: str,
        statement: Optional[str] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details = {}
        if statement:
            details["statement"] = " ".join(statement.split())
        super().__init__(message, details, cause)
        self.statement = statement


class UnsupportedTypeError(SchemaError):
    """Raised when a logical type outside the known set reaches the type mapping."""

    def __init__(self, logical_type: Any) -> None:
        super().__init__(f"Unsupported logical column type: {logical_type!r}")
        self.logical_type = logical_type


class MetadataError(DatabaseError):
    """Raised when the logical schema record cannot be read or written."""

    pass
