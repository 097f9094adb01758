"""
Schema validation engine for tabledef.

Judges proposed schema changes against the data currently stored in the
physical table. The validator never executes DDL and never raises for a
bad proposal: every problem is reported on a result object that the
caller inspects before anything is applied.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import DatabaseError
from .compatibility import (
    can_convert,
    conversion_note,
    is_lossy,
    requires_value_check,
)
from .models import ColumnUpdate, LogicalTable
from .naming import derive_physical_name, is_exact_identifier, is_reserved_word
from .types import LogicalType, default_literal_warning, display_label


logger = logging.getLogger(__name__)


class ColumnChangeState(str, Enum):
    """Lifecycle of a proposed column change."""

    PROPOSED = "proposed"
    REJECTED = "rejected"
    APPLIED = "applied"
    APPLIED_WITH_FORCE = "applied_with_force"


@dataclass
class ValidationResult:
    """Judgment on a single column change."""

    is_valid: bool = True
    can_convert: bool = True
    has_data_compatibility_issues: bool = False
    requires_force_update: bool = False
    affected_row_count: int = 0
    unconvertible_value_count: int = 0
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def reject(self, message: str) -> None:
        self.is_valid = False
        self.issues.append(message)

    def flag_data_issue(self, message: str) -> None:
        """Record a lossy-but-possible change that needs confirmation."""
        self.has_data_compatibility_issues = True
        self.requires_force_update = True
        self.issues.append(message)


@dataclass
class TableValidationResult:
    """Aggregated judgment on a whole table update."""

    is_valid: bool = True
    has_structural_changes: bool = False
    has_data_compatibility_issues: bool = False
    requires_force_update: bool = False
    affected_row_count: int = 0
    estimated_backup_size_bytes: int = 0
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    column_issues: Dict[str, List[str]] = field(default_factory=dict)
    column_results: Dict[str, List[ValidationResult]] = field(default_factory=dict)
    force_required_columns: List[str] = field(default_factory=list)

    def reject(self, message: str, column: Optional[str] = None) -> None:
        self.is_valid = False
        self._record(message, column)

    def flag_data_issue(self, message: str, column: Optional[str] = None) -> None:
        self.has_data_compatibility_issues = True
        self.requires_force_update = True
        if column and column not in self.force_required_columns:
            self.force_required_columns.append(column)
        self._record(message, column)

    def _record(self, message: str, column: Optional[str]) -> None:
        if column:
            self.column_issues.setdefault(column, []).append(message)
        else:
            self.issues.append(message)

    def merge(self, column: str, result: ValidationResult) -> None:
        """Fold a single-column result into this table result."""
        self.column_results.setdefault(column, []).append(result)
        if result.issues:
            self.column_issues.setdefault(column, []).extend(result.issues)
        self.warnings.extend(result.warnings)
        if not result.is_valid:
            self.is_valid = False
        if result.has_data_compatibility_issues:
            self.has_data_compatibility_issues = True
        if result.requires_force_update:
            self.requires_force_update = True
            if column not in self.force_required_columns:
                self.force_required_columns.append(column)

    def can_apply(self, force: bool = False, forced_columns: Optional[Dict[str, bool]] = None) -> bool:
        """
        Whether the update may proceed.

        Impossible changes are never applied. Lossy changes need either the
        table-wide ``force`` flag or a per-column confirmation for every
        column that asked for one.
        """
        if not self.is_valid:
            return False
        if not self.requires_force_update or force:
            return True
        forced_columns = forced_columns or {}
        return bool(self.force_required_columns) and all(
            forced_columns.get(column, False) for column in self.force_required_columns
        )

    @property
    def all_issues(self) -> List[str]:
        messages = list(self.issues)
        for column, column_messages in self.column_issues.items():
            messages.extend(f"{column}: {m}" for m in column_messages)
        return messages


def resolve_change_state(result, force: bool = False) -> ColumnChangeState:
    """Map a validation result and the force flag onto the change lifecycle."""
    if not result.is_valid:
        return ColumnChangeState.REJECTED
    if result.requires_force_update:
        return ColumnChangeState.APPLIED_WITH_FORCE if force else ColumnChangeState.PROPOSED
    return ColumnChangeState.APPLIED


class SchemaValidator:
    """
    Validates schema changes against live data.

    Holds no state between calls; each call inspects the physical table
    afresh.
    """

    def __init__(self, pool: ConnectionPool, physical_schema: str = "public"):
        self.pool = pool
        self.physical_schema = physical_schema
        self.introspector = SchemaIntrospector(pool)

    async def _row_count(self, table: str) -> int:
        if not await self.introspector.table_exists(self.physical_schema, table):
            return 0
        return await self.introspector.row_count(self.physical_schema, table)

    async def validate_column_type_change(
        self,
        table: str,
        column: str,
        current_type: LogicalType,
        new_type: LogicalType,
    ) -> ValidationResult:
        """Judge converting ``table.column`` from ``current_type`` to ``new_type``."""
        result = ValidationResult()
        if current_type == new_type:
            return result

        source, target = display_label(current_type), display_label(new_type)

        if not can_convert(current_type, new_type):
            result.can_convert = False
            result.reject(f"Cannot convert column '{column}' from {source} to {target}")
            return result

        try:
            row_count = await self._row_count(table)
            result.affected_row_count = row_count

            if row_count > 0 and is_lossy(current_type, new_type):
                result.flag_data_issue(
                    f"Converting column '{column}' from {source} to {target} "
                    f"may lose data in {row_count} rows"
                )
                if requires_value_check(current_type, new_type):
                    bad = await self.introspector.count_unconvertible_values(
                        self.physical_schema, table, column, new_type
                    )
                    result.unconvertible_value_count = bad
                    if bad:
                        result.issues.append(
                            f"{bad} values in column '{column}' cannot be converted "
                            f"to {target} and will become NULL"
                        )
            else:
                note = conversion_note(current_type, new_type)
                if note:
                    result.notes.append(note)

        except DatabaseError as e:
            logger.error(f"Type change validation failed for {table}.{column}: {e}")
            result.reject(f"Could not inspect column '{column}': {e.message}")

        return result

    async def validate_column_requiredness_change(
        self,
        table: str,
        column: str,
        making_required: bool,
        default_value: Optional[str] = None,
    ) -> ValidationResult:
        """Judge making ``table.column`` required (or optional)."""
        result = ValidationResult()
        if not making_required:
            return result

        try:
            if not await self.introspector.table_exists(self.physical_schema, table):
                return result

            nulls = await self.introspector.count_null_values(self.physical_schema, table, column)
            result.affected_row_count = nulls

            if nulls > 0:
                if default_value:
                    result.warnings.append(
                        f"{nulls} NULL values in column '{column}' will be set to "
                        f"the default value '{default_value}'"
                    )
                else:
                    result.flag_data_issue(
                        f"Column '{column}' has {nulls} NULL values and no default; "
                        f"forcing the change fills them with the type's zero value"
                    )

        except DatabaseError as e:
            logger.error(f"Requiredness validation failed for {table}.{column}: {e}")
            result.reject(f"Could not inspect column '{column}': {e.message}")

        return result

    async def validate_table_update(
        self,
        table: LogicalTable,
        proposed_name: str,
        proposed_columns: Optional[Sequence[ColumnUpdate]],
    ) -> TableValidationResult:
        """
        Judge a complete table update against the stored data.

        ``proposed_columns`` is the desired column set: existing columns
        left out are deleted, entries without ``column_id`` are added.
        None leaves the columns untouched.
        """
        result = TableValidationResult()
        physical = table.physical_name
        schema = self.physical_schema

        try:
            exists = await self.introspector.table_exists(schema, physical)
            row_count = await self.introspector.row_count(schema, physical) if exists else 0
        except DatabaseError as e:
            logger.error(f"Could not inspect table {physical}: {e}")
            result.reject(f"Could not inspect table '{table.name}': {e.message}")
            return result

        result.affected_row_count = row_count
        if not exists:
            result.warnings.append(f"Physical table '{physical}' does not exist")

        await self._check_table_name(result, table, proposed_name)

        if proposed_columns is not None:
            self._check_duplicates(result, proposed_columns)
            await self._check_deletions(result, table, proposed_columns, exists, row_count)
            for proposed in proposed_columns:
                await self._check_column(result, table, proposed, row_count)

        if result.has_structural_changes and row_count > 0:
            result.estimated_backup_size_bytes = await self.introspector.estimate_table_size(
                schema, physical
            )

        logger.debug(
            f"Validated update of {physical}: valid={result.is_valid} "
            f"structural={result.has_structural_changes} force={result.requires_force_update}"
        )
        return result

    async def _check_table_name(
        self, result: TableValidationResult, table: LogicalTable, proposed_name: str
    ) -> None:
        proposed_name = (proposed_name or "").strip()
        if not proposed_name:
            result.reject("Table name cannot be empty")
            return
        if proposed_name == table.name:
            return
        if not is_exact_identifier(proposed_name):
            result.reject(f"Table name '{proposed_name}' contains characters that are not allowed")
            return

        new_physical = derive_physical_name(proposed_name, table.owner_id)
        if new_physical == table.physical_name:
            return

        result.has_structural_changes = True
        try:
            if await self.introspector.table_exists(self.physical_schema, new_physical):
                result.reject(f"A physical table named '{new_physical}' already exists")
        except DatabaseError as e:
            result.reject(f"Could not inspect table '{new_physical}': {e.message}")

    def _check_duplicates(
        self, result: TableValidationResult, proposed_columns: Sequence[ColumnUpdate]
    ) -> None:
        seen_names = set()
        seen_orders = set()
        for proposed in proposed_columns:
            key = proposed.column_name.lower()
            if key in seen_names:
                result.reject(f"Duplicate column name '{proposed.column_name}'")
            seen_names.add(key)
            if proposed.display_order in seen_orders:
                result.reject(f"Duplicate display order {proposed.display_order}")
            seen_orders.add(proposed.display_order)

    async def _check_deletions(
        self,
        result: TableValidationResult,
        table: LogicalTable,
        proposed_columns: Sequence[ColumnUpdate],
        exists: bool,
        row_count: int,
    ) -> None:
        kept_ids = {c.column_id for c in proposed_columns if c.column_id}
        for existing in table.columns:
            if existing.id in kept_ids:
                continue
            result.has_structural_changes = True
            if not exists or row_count == 0:
                continue
            try:
                has_data = await self.introspector.column_has_data(
                    self.physical_schema, table.physical_name, existing.physical_name
                )
            except DatabaseError as e:
                result.reject(f"Could not inspect column: {e.message}", existing.name)
                continue
            if has_data:
                result.flag_data_issue(
                    f"Deleting column '{existing.name}' will lose the data it holds",
                    existing.name,
                )

    async def _check_column(
        self,
        result: TableValidationResult,
        table: LogicalTable,
        proposed: ColumnUpdate,
        row_count: int,
    ) -> None:
        name = proposed.column_name
        if not is_exact_identifier(name):
            result.reject("Column name contains characters that are not allowed", name)
        if is_reserved_word(name):
            result.reject(f"Column name '{name}' is a reserved word", name)

        warning = default_literal_warning(proposed.default_value, proposed.data_type)
        if warning:
            result.warnings.append(f"{name}: {warning}")

        if proposed.is_new:
            result.has_structural_changes = True
            if proposed.is_required and not proposed.default_value and row_count > 0:
                result.flag_data_issue(
                    f"Required column '{name}' without a default cannot be added "
                    f"to a table with {row_count} rows",
                    name,
                )
            return

        existing = table.get_column(proposed.column_id)
        if existing is None:
            result.reject(f"Column id {proposed.column_id} does not belong to this table", name)
            return

        if existing.name != name:
            result.has_structural_changes = True

        if existing.data_type != proposed.data_type:
            result.has_structural_changes = True
            result.merge(
                name,
                await self.validate_column_type_change(
                    table.physical_name, existing.physical_name,
                    existing.data_type, proposed.data_type,
                ),
            )

        if existing.is_required != proposed.is_required:
            result.has_structural_changes = True
            if proposed.is_required:
                result.merge(
                    name,
                    await self.validate_column_requiredness_change(
                        table.physical_name, existing.physical_name,
                        True, proposed.default_value,
                    ),
                )

        if (existing.default_value or None) != (proposed.default_value or None):
            result.has_structural_changes = True
