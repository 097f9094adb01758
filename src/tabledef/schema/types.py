"""
Logical column types and their mapping to PostgreSQL.

Covers the physical type for each logical type, the reverse mapping used
when reading a table back from ``information_schema``, default-value
literal formatting and coercion of user-supplied row values.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..exceptions import UnsupportedTypeError

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
TEXT_MAX_LENGTH = 255
DECIMAL_PRECISION = 18
DECIMAL_SCALE = 2

NOW_LITERAL = "NOW()"
NOW_ALIASES = frozenset({"now()", "getdate()", "current_timestamp", "now"})

TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
)


class LogicalType(str, Enum):
    """Column data types a user can choose for a logical column."""

    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    TIMESTAMP = "timestamp"

    @classmethod
    def parse(cls, value: Union["LogicalType", str, int]) -> "LogicalType":
        """
        Parse a logical type from its value, a legacy name or a legacy code.

        Accepts ``"integer"``, ``"Int"``, ``2`` and so on. Raises
        UnsupportedTypeError for anything else.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise UnsupportedTypeError(value)
        if isinstance(value, int):
            if value in _LEGACY_CODES:
                return _LEGACY_CODES[value]
            raise UnsupportedTypeError(value)
        if isinstance(value, str):
            key = value.strip().lower()
            if key.isdigit() and int(key) in _LEGACY_CODES:
                return _LEGACY_CODES[int(key)]
            if key in _ALIASES:
                return _ALIASES[key]
        raise UnsupportedTypeError(value)


_LEGACY_CODES: Dict[int, LogicalType] = {
    1: LogicalType.TEXT,
    2: LogicalType.INTEGER,
    3: LogicalType.DECIMAL,
    4: LogicalType.TIMESTAMP,
}

_ALIASES: Dict[str, LogicalType] = {
    "text": LogicalType.TEXT,
    "varchar": LogicalType.TEXT,
    "string": LogicalType.TEXT,
    "integer": LogicalType.INTEGER,
    "int": LogicalType.INTEGER,
    "decimal": LogicalType.DECIMAL,
    "numeric": LogicalType.DECIMAL,
    "timestamp": LogicalType.TIMESTAMP,
    "datetime": LogicalType.TIMESTAMP,
}

PHYSICAL_TYPES: Dict[LogicalType, str] = {
    LogicalType.TEXT: f"VARCHAR({TEXT_MAX_LENGTH})",
    LogicalType.INTEGER: "INTEGER",
    LogicalType.DECIMAL: f"NUMERIC({DECIMAL_PRECISION},{DECIMAL_SCALE})",
    LogicalType.TIMESTAMP: "TIMESTAMP",
}

# information_schema.columns.data_type -> logical type
INFORMATION_SCHEMA_TYPES: Dict[str, LogicalType] = {
    "character varying": LogicalType.TEXT,
    "varchar": LogicalType.TEXT,
    "text": LogicalType.TEXT,
    "integer": LogicalType.INTEGER,
    "int4": LogicalType.INTEGER,
    "numeric": LogicalType.DECIMAL,
    "timestamp without time zone": LogicalType.TIMESTAMP,
    "timestamp": LogicalType.TIMESTAMP,
}

DISPLAY_LABELS: Dict[LogicalType, str] = {
    LogicalType.TEXT: "VARCHAR",
    LogicalType.INTEGER: "INT",
    LogicalType.DECIMAL: "DECIMAL",
    LogicalType.TIMESTAMP: "DATETIME",
}

ZERO_LITERALS: Dict[LogicalType, str] = {
    LogicalType.TEXT: "''",
    LogicalType.INTEGER: "0",
    LogicalType.DECIMAL: "0",
    LogicalType.TIMESTAMP: NOW_LITERAL,
}


def _require_known(logical_type: Any) -> LogicalType:
    if not isinstance(logical_type, LogicalType):
        raise UnsupportedTypeError(logical_type)
    return logical_type


def to_physical_type(logical_type: LogicalType) -> str:
    """PostgreSQL column type for a logical type."""
    return PHYSICAL_TYPES[_require_known(logical_type)]


def from_physical_type(data_type: Optional[str]) -> Optional[LogicalType]:
    """Logical type for an ``information_schema`` data type, if it maps to one."""
    if not data_type:
        return None
    return INFORMATION_SCHEMA_TYPES.get(data_type.strip().lower())


def display_label(logical_type: LogicalType) -> str:
    return DISPLAY_LABELS[_require_known(logical_type)]


def zero_literal(logical_type: LogicalType) -> str:
    """Fallback literal used when a value is missing or malformed."""
    return ZERO_LITERALS[_require_known(logical_type)]


def _parse_int(raw: str) -> Optional[int]:
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    if value < INT32_MIN or value > INT32_MAX:
        return None
    return value


def _parse_decimal(raw: str) -> Optional[Decimal]:
    try:
        value = Decimal(raw.strip().replace(",", "."))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_timestamp(raw: str) -> Optional[datetime]:
    text = raw.strip()
    try:
        return _naive_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def format_default_literal(raw: Optional[str], logical_type: LogicalType) -> str:
    """
    Turn a user-supplied default value into a type-correct SQL literal.

    Never raises for a known type: malformed input falls back to the
    type's zero value (``0``) or ``NOW()`` so a single bad default cannot
    fail a whole CREATE TABLE. :func:`default_literal_warning` reports when
    that fallback kicks in.
    """
    logical_type = _require_known(logical_type)
    raw = "" if raw is None else str(raw)

    if logical_type == LogicalType.TEXT:
        return "'" + raw.replace("'", "''") + "'"

    if logical_type == LogicalType.INTEGER:
        value = _parse_int(raw)
        return str(value) if value is not None else "0"

    if logical_type == LogicalType.DECIMAL:
        value = _parse_decimal(raw)
        return format(value, "f") if value is not None else "0"

    if raw.strip().lower() in NOW_ALIASES:
        return NOW_LITERAL
    parsed = _parse_timestamp(raw)
    if parsed is None:
        return NOW_LITERAL
    return "'" + parsed.strftime("%Y-%m-%d %H:%M:%S") + "'"


def default_literal_warning(raw: Optional[str], logical_type: LogicalType) -> Optional[str]:
    """Describe the fallback format_default_literal would apply, or None."""
    logical_type = _require_known(logical_type)
    if raw is None or raw == "":
        return None

    if logical_type == LogicalType.TEXT:
        if len(raw) > TEXT_MAX_LENGTH:
            return f"Default value is longer than {TEXT_MAX_LENGTH} characters"
        return None

    if logical_type == LogicalType.INTEGER and _parse_int(raw) is None:
        return f"Default value '{raw}' is not a valid INT; 0 will be used"

    if logical_type == LogicalType.DECIMAL and _parse_decimal(raw) is None:
        return f"Default value '{raw}' is not a valid DECIMAL; 0 will be used"

    if logical_type == LogicalType.TIMESTAMP:
        if raw.strip().lower() not in NOW_ALIASES and _parse_timestamp(raw) is None:
            return f"Default value '{raw}' is not a valid DATETIME; NOW() will be used"

    return None


def coerce_value(raw: Any, logical_type: LogicalType) -> Any:
    """
    Convert a user-supplied row value into the Python type asyncpg expects.

    ``None`` and empty strings become ``None``. Raises ValueError when the
    value cannot be represented in the column's type.
    """
    logical_type = _require_known(logical_type)
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return None

    if logical_type == LogicalType.TEXT:
        text = raw if isinstance(raw, str) else str(raw)
        if len(text) > TEXT_MAX_LENGTH:
            raise ValueError(f"Text value exceeds {TEXT_MAX_LENGTH} characters")
        return text

    if logical_type == LogicalType.INTEGER:
        if isinstance(raw, bool):
            raise ValueError(f"Invalid INT value: {raw!r}")
        if isinstance(raw, int):
            value = raw
        else:
            value = _parse_int(str(raw))
            if value is None:
                raise ValueError(f"Invalid INT value: {raw!r}")
        if value < INT32_MIN or value > INT32_MAX:
            raise ValueError(f"INT value out of range: {raw!r}")
        return value

    if logical_type == LogicalType.DECIMAL:
        if isinstance(raw, Decimal):
            return raw
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return Decimal(str(raw))
        value = _parse_decimal(str(raw))
        if value is None:
            raise ValueError(f"Invalid DECIMAL value: {raw!r}")
        return value

    if isinstance(raw, datetime):
        return _naive_utc(raw)
    parsed = _parse_timestamp(str(raw))
    if parsed is None:
        raise ValueError(f"Invalid DATETIME value: {raw!r}")
    return parsed
