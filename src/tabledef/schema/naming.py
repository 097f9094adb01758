"""
Identifier sanitizing and the physical naming scheme for tabledef.

Physical table names are a pure function of (owner id, logical table name)
and can be recomputed at any time without stored state. Every identifier
that ends up inside DDL or DML text goes through :func:`sanitize_identifier`
first, because bound parameters cannot protect identifiers.
"""

import re
import unicodedata
from datetime import datetime, timezone
from typing import Optional

PHYSICAL_TABLE_PREFIX = "Table"
ID_COLUMN = "Id"
ROW_IDENTIFIER_COLUMN = "RowIdentifier"
SYSTEM_COLUMNS = (ID_COLUMN, ROW_IDENTIFIER_COLUMN)

FALLBACK_IDENTIFIER = "unnamed"
MAX_LOGICAL_NAME_LENGTH = 50
MAX_IDENTIFIER_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1
BACKUP_MARKER = "_backup_"

UNSAFE_CHARACTERS = frozenset("[];'\"")
UNSAFE_SEQUENCES = ("--", "/*", "*/")

TRANSLITERATIONS = {
    "ı": "i", "İ": "I",
    "ş": "s", "Ş": "S",
    "ç": "c", "Ç": "C",
    "ğ": "g", "Ğ": "G",
    "ü": "u", "Ü": "U",
    "ö": "o", "Ö": "O",
    "â": "a", "Â": "A",
    "î": "i", "Î": "I",
    "û": "u", "Û": "U",
    "ß": "ss",
    "æ": "ae", "Æ": "AE",
    "œ": "oe", "Œ": "OE",
    "ø": "o", "Ø": "O",
    "å": "a", "Å": "A",
    "đ": "d", "Đ": "D",
    "ł": "l", "Ł": "L",
}

SAFE_NAME_PATTERN = re.compile(r"^[a-zA-ZığüşöçİĞÜŞÖÇ][a-zA-Z0-9ığüşöçİĞÜŞÖÇ_]*$")
_WHITESPACE_RUN = re.compile(r"\s+")
_NON_IDENTIFIER_CHARS = re.compile(r"[^A-Za-z0-9_]")

RESERVED_WORDS = frozenset({
    "SELECT", "FROM", "WHERE", "INSERT", "UPDATE", "DELETE", "CREATE", "DROP",
    "ALTER", "TABLE", "INDEX", "VIEW", "PROCEDURE", "FUNCTION", "TRIGGER",
    "DATABASE", "SCHEMA", "PRIMARY", "KEY", "FOREIGN", "UNIQUE", "NULL", "NOT",
    "AND", "OR", "IN", "EXISTS", "BETWEEN", "LIKE", "IS", "AS", "ON", "INNER",
    "LEFT", "RIGHT", "FULL", "JOIN", "UNION", "GROUP", "ORDER", "HAVING",
    "DISTINCT", "TOP", "LIMIT", "OFFSET", "CASE", "WHEN", "THEN", "ELSE", "END",
    "IF", "WHILE", "FOR", "DECLARE", "SET", "EXEC", "EXECUTE", "RETURN",
    "BEGIN", "COMMIT", "ROLLBACK", "TRANSACTION", "GRANT", "REVOKE", "DENY",
    "USER", "ROLE", "PERMISSION", "CAST", "CONVERT", "SUBSTRING", "LEN",
    "UPPER", "LOWER", "TRIM", "REPLACE", "DATEADD", "DATEDIFF", "GETDATE",
    "YEAR", "MONTH", "DAY",
    # system columns of every physical table
    "ID", "ROWIDENTIFIER", "CREATEDAT", "UPDATEDAT",
})


def transliterate(value: str) -> str:
    """Map locale-specific letters to their closest ASCII equivalents."""
    mapped = "".join(TRANSLITERATIONS.get(ch, ch) for ch in value)
    decomposed = unicodedata.normalize("NFKD", mapped)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(name: Optional[str]) -> str:
    """Normalize a logical name into the ASCII form used in physical names."""
    if not name or not name.strip():
        return FALLBACK_IDENTIFIER

    normalized = _WHITESPACE_RUN.sub("_", name.strip())
    normalized = transliterate(normalized)
    normalized = _NON_IDENTIFIER_CHARS.sub("_", normalized)
    normalized = normalized[:MAX_LOGICAL_NAME_LENGTH]

    return normalized or FALLBACK_IDENTIFIER


def owner_table_prefix(owner_id: int) -> str:
    """Prefix shared by every physical table of one owner."""
    return f"{PHYSICAL_TABLE_PREFIX}_{owner_id}_"


def derive_physical_name(logical_name: str, owner_id: int) -> str:
    """
    Derive the physical table name for a logical table.

    Pure and deterministic: the same inputs always give the same name, so
    debug and reconciliation tooling can recompute it without lookups.

    >>> derive_physical_name("Müşteriler", 7)
    'Table_7_Musteriler'
    """
    physical = f"{owner_table_prefix(owner_id)}{normalize_name(logical_name)}"
    return physical[:MAX_IDENTIFIER_LENGTH]


def sanitize_identifier(name: Optional[str]) -> str:
    """
    Strip characters that could break out of a quoted identifier.

    Removes brackets, quotes, statement terminators, comment markers and
    control characters. Never raises; an empty result degrades to
    FALLBACK_IDENTIFIER.
    """
    if not name:
        return FALLBACK_IDENTIFIER

    sanitized = name
    while True:
        previous = sanitized
        for sequence in UNSAFE_SEQUENCES:
            sanitized = sanitized.replace(sequence, "")
        sanitized = "".join(
            ch for ch in sanitized
            if ch not in UNSAFE_CHARACTERS and ord(ch) >= 32 and ord(ch) != 127
        )
        if sanitized == previous:
            break

    sanitized = sanitized.strip()
    return sanitized or FALLBACK_IDENTIFIER


def is_exact_identifier(name: Optional[str]) -> bool:
    """True when sanitizing leaves the identifier untouched."""
    return bool(name) and sanitize_identifier(name) == name


def quote_identifier(name: str) -> str:
    """Sanitize and double-quote an identifier for use in SQL text."""
    return f'"{sanitize_identifier(name)}"'


def qualified_name(schema: str, table: str) -> str:
    """Schema-qualified, quoted table reference."""
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def is_reserved_word(name: str) -> bool:
    return name.strip().upper() in RESERVED_WORDS


def is_safe_name(name: Optional[str]) -> bool:
    """Check a user-facing column name against the allowed character set."""
    return bool(name) and SAFE_NAME_PATTERN.match(name) is not None


def is_backup_table(physical_name: str) -> bool:
    return BACKUP_MARKER in physical_name


def backup_table_name(physical_name: str, timestamp: Optional[datetime] = None) -> str:
    """Timestamp-suffixed shadow table name for a physical table."""
    stamp = (timestamp or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    suffix = f"{BACKUP_MARKER}{stamp}"
    base = sanitize_identifier(physical_name)[: MAX_IDENTIFIER_LENGTH - len(suffix)]
    return f"{base}{suffix}"
