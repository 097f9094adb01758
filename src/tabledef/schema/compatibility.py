"""
Conversion compatibility matrix for logical column types.

Answers whether one logical type can be converted to another, whether the
conversion can lose data, and how PostgreSQL should perform it.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .types import LogicalType, to_physical_type


@dataclass(frozen=True)
class ConversionRule:
    """One cell of the conversion matrix."""

    allowed: bool
    lossy: bool = False
    value_check: bool = False
    note: str = ""


_T = LogicalType.TEXT
_I = LogicalType.INTEGER
_D = LogicalType.DECIMAL
_TS = LogicalType.TIMESTAMP

_BLOCKED = ConversionRule(allowed=False)

CONVERSION_MATRIX: Dict[Tuple[LogicalType, LogicalType], ConversionRule] = {
    (_T, _I): ConversionRule(True, lossy=True, value_check=True,
                             note="Text values that are not whole numbers become NULL"),
    (_T, _D): ConversionRule(True, lossy=True, value_check=True,
                             note="Text values that are not numbers become NULL"),
    (_T, _TS): ConversionRule(True, lossy=True, value_check=True,
                              note="Text values that are not dates become NULL"),
    (_I, _T): ConversionRule(True, note="Safe conversion from INT to VARCHAR"),
    (_I, _D): ConversionRule(True, note="Safe conversion from INT to DECIMAL"),
    (_I, _TS): _BLOCKED,
    (_D, _T): ConversionRule(True, note="Safe conversion from DECIMAL to VARCHAR"),
    (_D, _I): ConversionRule(True, lossy=True,
                             note="Fractional parts are rounded away"),
    (_D, _TS): _BLOCKED,
    (_TS, _T): ConversionRule(True, note="Safe conversion from DATETIME to VARCHAR"),
    (_TS, _I): _BLOCKED,
    (_TS, _D): _BLOCKED,
}

_DATE = (
    "("
    "(?!0000)[0-9]{4}-(0[1-9]|1[0-2])-(0[1-9]|1[0-9]|2[0-8])"
    "|(?!0000)[0-9]{4}-(0[13-9]|1[0-2])-(29|30)"
    "|(?!0000)[0-9]{4}-(0[13578]|1[02])-31"
    "|([0-9]{2}(0[48]|[2468][048]|[13579][26])|(0[48]|[2468][048]|[13579][26])00)-02-29"
    ")"
)
_TIME = "([ T]([01][0-9]|2[0-3]):[0-5][0-9](:[0-5][0-9]([.][0-9]{1,6})?)?)?"

# Text values that convert without error, as PostgreSQL regexes. Integers
# are limited to nine significant digits and decimals to the sixteen
# integer digits of NUMERIC(18,2) so the cast can never overflow.
VALUE_PATTERNS: Dict[LogicalType, str] = {
    LogicalType.INTEGER: r"^[-+]?0*[0-9]{1,9}$",
    LogicalType.DECIMAL: (
        r"^[-+]?0*([0-9]{1,16}([.,][0-9]{1,2})?|[0-9]{1,15}[.,][0-9]+)$"
    ),
    LogicalType.TIMESTAMP: f"^{_DATE}{_TIME}$",
}


def get_rule(from_type: LogicalType, to_type: LogicalType) -> ConversionRule:
    if from_type == to_type:
        return ConversionRule(allowed=True)
    return CONVERSION_MATRIX.get((from_type, to_type), _BLOCKED)


def can_convert(from_type: LogicalType, to_type: LogicalType) -> bool:
    return get_rule(from_type, to_type).allowed


def is_lossy(from_type: LogicalType, to_type: LogicalType) -> bool:
    rule = get_rule(from_type, to_type)
    return rule.allowed and rule.lossy


def requires_confirmation(from_type: LogicalType, to_type: LogicalType) -> bool:
    """Lossy conversions on populated columns need an explicit force flag."""
    return is_lossy(from_type, to_type)


def requires_value_check(from_type: LogicalType, to_type: LogicalType) -> bool:
    """Individual values may fail to convert and must be inspected first."""
    return get_rule(from_type, to_type).value_check


def conversion_note(from_type: LogicalType, to_type: LogicalType) -> str:
    return get_rule(from_type, to_type).note


def using_expression(
    column_sql: str, from_type: LogicalType, to_type: LogicalType
) -> Optional[str]:
    """
    Build the ``USING`` expression for ``ALTER COLUMN ... TYPE``.

    ``column_sql`` must already be a quoted identifier. Returns None for
    identity conversions.
    """
    if from_type == to_type:
        return None

    target = to_physical_type(to_type)

    if to_type == LogicalType.TEXT:
        return f"{column_sql}::{target}"

    if from_type == LogicalType.TEXT:
        pattern = VALUE_PATTERNS[to_type]
        trimmed = f"btrim({column_sql})"
        if to_type == LogicalType.DECIMAL:
            trimmed = f"replace({trimmed}, ',', '.')"
        return (
            f"CASE WHEN btrim({column_sql}) ~ '{pattern}' "
            f"THEN {trimmed}::{target} ELSE NULL END"
        )

    if from_type == LogicalType.DECIMAL and to_type == LogicalType.INTEGER:
        return f"ROUND({column_sql})::{target}"

    return f"{column_sql}::{target}"
