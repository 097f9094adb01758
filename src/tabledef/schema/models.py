"""
Logical schema model for tabledef.

``LogicalTable`` and ``LogicalColumn`` mirror the rows of the metadata
store. The request models validate user input before anything reaches the
validation engine or the DDL executor.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..exceptions import UnsupportedTypeError
from .naming import (
    derive_physical_name,
    is_exact_identifier,
    is_reserved_word,
    is_safe_name,
    sanitize_identifier,
)
from .types import LogicalType

MAX_COLUMNS = 50
MAX_NAME_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 500
MAX_DEFAULT_LENGTH = 255


@dataclass
class LogicalColumn:
    """A user-defined column of a logical table."""

    name: str
    data_type: LogicalType
    is_required: bool = False
    display_order: int = 0
    default_value: Optional[str] = None
    id: Optional[int] = None
    table_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def physical_name(self) -> str:
        """Name of the column in the physical table."""
        return sanitize_identifier(self.name)

    @property
    def has_default(self) -> bool:
        return bool(self.default_value)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "LogicalColumn":
        return cls(
            id=record["id"],
            table_id=record["table_id"],
            name=record["column_name"],
            data_type=LogicalType.parse(record["data_type"]),
            is_required=record["is_required"],
            display_order=record["display_order"],
            default_value=record["default_value"] or None,
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )


@dataclass
class LogicalTable:
    """A user-defined table as recorded in the metadata store."""

    name: str
    owner_id: int
    columns: List[LogicalColumn] = field(default_factory=list)
    description: Optional[str] = None
    id: Optional[int] = None
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def physical_name(self) -> str:
        """Derived physical table name; never stored."""
        return derive_physical_name(self.name, self.owner_id)

    @property
    def ordered_columns(self) -> List[LogicalColumn]:
        return sorted(self.columns, key=lambda c: c.display_order)

    def get_column(self, column_id: int) -> Optional[LogicalColumn]:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def find_column(self, name: str) -> Optional[LogicalColumn]:
        """Case-insensitive lookup by column name."""
        wanted = name.strip().lower()
        for column in self.columns:
            if column.name.lower() == wanted:
                return column
        return None

    @classmethod
    def from_record(
        cls, record: Mapping[str, Any], columns: Optional[List[LogicalColumn]] = None
    ) -> "LogicalTable":
        return cls(
            id=record["id"],
            name=record["table_name"],
            description=record["description"],
            owner_id=record["owner_id"],
            is_deleted=record["is_deleted"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
            columns=columns or [],
        )


class ColumnDefinition(BaseModel):
    """A column as requested by the user when creating a table."""

    column_name: str = Field(..., description="Column name")
    data_type: LogicalType = Field(..., description="Logical data type")
    is_required: bool = Field(False, description="Reject NULL values")
    display_order: int = Field(..., gt=0, lt=1000, description="Position of the column")
    default_value: Optional[str] = Field(
        None, max_length=MAX_DEFAULT_LENGTH, description="Default value literal"
    )

    @field_validator("column_name")
    @classmethod
    def validate_column_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Column name cannot be empty")
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"Column name cannot exceed {MAX_NAME_LENGTH} characters")
        if not is_safe_name(v):
            raise ValueError(
                "Column name must start with a letter and contain only letters, "
                "digits and underscores"
            )
        if is_reserved_word(v):
            raise ValueError(f"Column name '{v}' is a reserved word")
        return v

    @field_validator("data_type", mode="before")
    @classmethod
    def parse_data_type(cls, v: Any) -> LogicalType:
        try:
            return LogicalType.parse(v)
        except UnsupportedTypeError as e:
            raise ValueError(str(e)) from e

    @field_validator("default_value")
    @classmethod
    def empty_default_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    def to_logical_column(self, table_id: Optional[int] = None) -> LogicalColumn:
        return LogicalColumn(
            name=self.column_name,
            data_type=self.data_type,
            is_required=self.is_required,
            display_order=self.display_order,
            default_value=self.default_value,
            table_id=table_id,
        )


class ColumnUpdate(ColumnDefinition):
    """A column in a table update request; ``column_id`` is None for new columns."""

    column_id: Optional[int] = Field(None, description="Existing column id")
    force_update: bool = Field(False, description="Confirm a lossy change")

    @property
    def is_new(self) -> bool:
        return not self.column_id


def _check_unique_columns(columns: List[ColumnDefinition]) -> None:
    names = [c.column_name.lower() for c in columns]
    if len(set(names)) != len(names):
        raise ValueError("Column names must be unique")
    orders = [c.display_order for c in columns]
    if len(set(orders)) != len(orders):
        raise ValueError("Column display orders must be unique")


def _validate_table_name(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("Table name cannot be empty")
    if len(v) > MAX_NAME_LENGTH:
        raise ValueError(f"Table name cannot exceed {MAX_NAME_LENGTH} characters")
    if not is_exact_identifier(v):
        raise ValueError("Table name contains characters that are not allowed")
    return v


class CreateTableRequest(BaseModel):
    """Definition of a new logical table."""

    table_name: str = Field(..., description="Logical table name")
    description: Optional[str] = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    columns: List[ColumnDefinition] = Field(..., min_length=1, max_length=MAX_COLUMNS)

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        return _validate_table_name(v)

    @model_validator(mode="after")
    def validate_columns(self) -> "CreateTableRequest":
        _check_unique_columns(self.columns)
        return self


class UpdateTableRequest(BaseModel):
    """
    Desired state of an existing logical table.

    Columns present in the table but missing here are deleted; columns
    without ``column_id`` are added.
    """

    table_name: str = Field(..., description="Logical table name")
    description: Optional[str] = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    columns: Optional[List[ColumnUpdate]] = Field(None, max_length=MAX_COLUMNS)
    force_update: bool = Field(False, description="Confirm lossy changes")

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        return _validate_table_name(v)

    @model_validator(mode="after")
    def validate_columns(self) -> "UpdateTableRequest":
        if self.columns:
            _check_unique_columns(self.columns)
            ids = [c.column_id for c in self.columns if c.column_id]
            if len(set(ids)) != len(ids):
                raise ValueError("Column ids must be unique")
        return self

    @property
    def forced_columns(self) -> Dict[str, bool]:
        return {c.column_name: c.force_update for c in self.columns or []}

    @classmethod
    def from_table(cls, table: LogicalTable) -> "UpdateTableRequest":
        """Request describing the table exactly as it is."""
        return cls(
            table_name=table.name,
            description=table.description,
            columns=[
                ColumnUpdate(
                    column_id=c.id,
                    column_name=c.name,
                    data_type=c.data_type,
                    is_required=c.is_required,
                    display_order=c.display_order,
                    default_value=c.default_value,
                )
                for c in table.ordered_columns
            ],
        )
