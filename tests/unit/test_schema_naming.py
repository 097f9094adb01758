"""
Unit tests for identifier sanitizing and physical name derivation.
"""

from datetime import datetime

import pytest

from tabledef.schema.naming import (
    FALLBACK_IDENTIFIER,
    MAX_IDENTIFIER_LENGTH,
    UNSAFE_CHARACTERS,
    backup_table_name,
    derive_physical_name,
    is_backup_table,
    is_exact_identifier,
    is_reserved_word,
    is_safe_name,
    normalize_name,
    owner_table_prefix,
    qualified_name,
    quote_identifier,
    sanitize_identifier,
)


class TestDerivePhysicalName:
    """Test physical table name derivation."""

    def test_transliterates_locale_letters(self):
        """Test that Turkish letters are mapped to ASCII."""
        assert derive_physical_name("Müşteriler", 7) == "Table_7_Musteriler"

    def test_whitespace_becomes_underscore(self):
        """Test that runs of whitespace collapse into one underscore."""
        assert derive_physical_name("  Sales   Report 2024 ", 3) == "Table_3_Sales_Report_2024"

    def test_punctuation_becomes_underscore(self):
        """Test that non-identifier characters are replaced."""
        assert derive_physical_name("a-b.c", 1) == "Table_1_a_b_c"

    def test_empty_name_uses_fallback(self):
        """Test that blank names still yield a usable identifier."""
        assert derive_physical_name("   ", 1) == f"Table_1_{FALLBACK_IDENTIFIER}"

    def test_deterministic(self):
        """Test that the same inputs always give the same name."""
        names = {derive_physical_name("İstanbul Şube", 42) for _ in range(5)}
        assert names == {"Table_42_Istanbul_Sube"}

    def test_logical_part_truncated(self):
        """Test that the logical part is capped at 50 characters."""
        name = derive_physical_name("a" * 100, 1)
        assert name == "Table_1_" + "a" * 50

    def test_total_length_capped(self):
        """Test that long owner ids cannot exceed the PostgreSQL limit."""
        name = derive_physical_name("b" * 50, 10 ** 15)
        assert len(name) == MAX_IDENTIFIER_LENGTH

    def test_owner_prefix(self):
        """Test the prefix shared by an owner's tables."""
        assert owner_table_prefix(7) == "Table_7_"
        assert derive_physical_name("X", 7).startswith(owner_table_prefix(7))

    def test_normalize_name_keeps_digits(self):
        """Test that digits and underscores survive normalization."""
        assert normalize_name("Q1_totals") == "Q1_totals"


class TestSanitizeIdentifier:
    """Test identifier sanitizing."""

    def test_removes_injection_characters(self):
        """Test that quotes, terminators and comments are stripped."""
        result = sanitize_identifier('Name"; DROP TABLE x; --')
        assert result == "Name DROP TABLE x"
        assert not set(result) & UNSAFE_CHARACTERS
        assert "--" not in result

    def test_nested_comment_markers(self):
        """Test that markers revealed by an earlier removal are also removed."""
        assert sanitize_identifier("-/**/-") == FALLBACK_IDENTIFIER

    def test_control_characters(self):
        """Test that control characters are dropped."""
        assert sanitize_identifier("a\x00b\x1fc\x7f") == "abc"

    def test_brackets_removed(self):
        """Test that bracket quoting cannot be smuggled in."""
        assert sanitize_identifier("[Col]") == "Col"

    @pytest.mark.parametrize("value", [None, "", "   ", "'\"';"])
    def test_empty_result_uses_fallback(self, value):
        """Test that the sanitizer never returns an empty identifier."""
        assert sanitize_identifier(value) == FALLBACK_IDENTIFIER

    @pytest.mark.parametrize("value", [
        "x'; DELETE FROM t; /*", "a]b[c", "--", 'q"q"q', "ab*/cd/*ef",
    ])
    def test_output_never_contains_unsafe_text(self, value):
        """Test the sanitizer guarantee on hostile input."""
        result = sanitize_identifier(value)
        assert not set(result) & UNSAFE_CHARACTERS
        for sequence in ("--", "/*", "*/"):
            assert sequence not in result

    def test_exact_identifier(self):
        """Test detection of names the sanitizer would change."""
        assert is_exact_identifier("Customer Name")
        assert not is_exact_identifier("bad;name")
        assert not is_exact_identifier("")


class TestQuoting:
    """Test identifier quoting helpers."""

    def test_quote_identifier(self):
        """Test that quoting sanitizes first."""
        assert quote_identifier('x"y') == '"xy"'

    def test_qualified_name(self):
        """Test schema-qualified references."""
        assert qualified_name("public", "Table_1_A") == '"public"."Table_1_A"'


class TestNameChecks:
    """Test reserved words and the safe-name pattern."""

    @pytest.mark.parametrize("name", ["select", "Table", "RowIdentifier", "id"])
    def test_reserved_words(self, name):
        """Test that SQL keywords and system columns are reserved."""
        assert is_reserved_word(name)

    def test_regular_name_not_reserved(self):
        """Test that ordinary names pass."""
        assert not is_reserved_word("Customer")

    def test_safe_name_accepts_turkish_letters(self):
        """Test that locale letters are allowed in column names."""
        assert is_safe_name("Müşteri_1")

    @pytest.mark.parametrize("name", ["1abc", "a b", "a-b", "", None])
    def test_unsafe_names(self, name):
        """Test names rejected by the pattern."""
        assert not is_safe_name(name)


class TestBackupNames:
    """Test backup table naming."""

    def test_timestamp_suffix(self):
        """Test the backup name format."""
        name = backup_table_name("Table_7_Musteriler", datetime(2024, 1, 2, 3, 4, 5))
        assert name == "Table_7_Musteriler_backup_20240102030405"
        assert is_backup_table(name)

    def test_long_name_truncated(self):
        """Test that backup names respect the identifier limit."""
        name = backup_table_name("T" * 70, datetime(2024, 1, 2, 3, 4, 5))
        assert len(name) == MAX_IDENTIFIER_LENGTH
        assert name.endswith("_backup_20240102030405")

    def test_regular_table_is_not_backup(self):
        """Test backup detection on a normal table."""
        assert not is_backup_table("Table_7_Musteriler")
