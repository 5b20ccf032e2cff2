"""
Tests for record validation and sanitization.
"""
import pytest

from bookstack.core.exceptions import ManifestError
from bookstack.services.record_validator import (
    MAX_DESCRIPTION_LENGTH,
    identifier_of,
    is_valid_isbn,
    normalize_isbn,
    validate_batch_size,
    validate_record,
)


class TestIsbnChecksums:
    """ISBN-10 and ISBN-13 checksum validation."""

    @pytest.mark.parametrize("isbn", ["9780306406157", "978-0-306-40615-7", "0306406152", "080442957X", "080442957x"])
    def test_valid_isbns(self, isbn):
        assert is_valid_isbn(isbn)

    @pytest.mark.parametrize("isbn", ["9780306406158", "0306406153", "12345", "97803064061571", "abcdefghij"])
    def test_invalid_isbns(self, isbn):
        assert not is_valid_isbn(isbn)

    def test_normalize_strips_separators(self):
        assert normalize_isbn(" 978-0 306-40615-7 ") == "9780306406157"
        assert normalize_isbn("0-8044-2957-x") == "080442957X"


class TestValidateRecord:
    """Per-record rules."""

    def test_valid_record_is_sanitized(self):
        result = validate_record({
            "isbn": "978-0-306-40615-7",
            "title": "  The Physics of Waves  ",
            "author": "Jane Doe",
            "condition": "like new",
            "quantity": "3",
        }, 1)

        assert result.is_valid
        assert result.record.isbn == "9780306406157"
        assert result.record.title == "The Physics of Waves"
        assert result.record.condition == "Like New"
        assert result.record.quantity == 3

    def test_defaults_for_blank_quantity_and_condition(self):
        result = validate_record({"title": "Untitled", "quantity": "", "condition": ""}, 1)
        assert result.is_valid
        assert result.record.quantity == 1
        assert result.record.condition == "Good"

    def test_requires_an_identifier(self):
        result = validate_record({"author": "Someone"}, 4)
        assert not result.is_valid
        assert result.errors == ["Row 4: At least one identifier (ISBN, UPC, ASIN, or title) is required"]

    def test_bad_checksum_is_rejected(self):
        result = validate_record({"isbn": "9780306406158", "title": "Typo"}, 2)
        assert not result.is_valid
        assert "Row 2: Invalid ISBN format: 9780306406158" in result.errors

    @pytest.mark.parametrize("quantity", [0, -1, 1001, "abc", "2.5", True])
    def test_quantity_out_of_range(self, quantity):
        result = validate_record({"title": "Book", "quantity": quantity}, 1)
        assert not result.is_valid
        assert any("Quantity must be between 1 and 1000" in e for e in result.errors)

    def test_huge_digit_string_fails_the_row(self):
        result = validate_record({"title": "Book", "quantity": "9" * 5000}, 3)

        assert not result.is_valid
        [error] = result.errors
        assert error.startswith("Row 3: Quantity must be between 1 and 1000")
        assert len(error) < 120

    def test_quantity_bounds_are_inclusive(self):
        assert validate_record({"title": "Book", "quantity": 1}, 1).is_valid
        assert validate_record({"title": "Book", "quantity": "1000"}, 1).is_valid

    def test_unknown_condition(self):
        result = validate_record({"title": "Book", "condition": "Mint"}, 1)
        assert not result.is_valid
        assert "Invalid condition" in result.errors[0]

    def test_long_title_is_rejected_not_truncated(self):
        result = validate_record({"title": "x" * 256}, 1)
        assert not result.is_valid
        assert "Title too long" in result.errors[0]

    def test_long_description_is_truncated(self):
        result = validate_record({"title": "Book", "description": "d" * (MAX_DESCRIPTION_LENGTH + 50)}, 1)
        assert result.is_valid
        assert len(result.record.description) == MAX_DESCRIPTION_LENGTH

    def test_collects_every_error(self):
        result = validate_record({"isbn": "123", "quantity": 0, "condition": "Shiny"}, 7)
        assert len(result.errors) == 3
        assert all(e.startswith("Row 7: ") for e in result.errors)

    def test_identifier_of_prefers_isbn(self):
        assert identifier_of({"isbn": "", "upc": "012345678905", "title": "T"}) == "012345678905"
        assert identifier_of({}) is None


class TestBatchSize:
    """Structural checks on the whole manifest."""

    def test_not_a_list(self):
        with pytest.raises(ManifestError, match="Books must be an array"):
            validate_batch_size({"isbn": "1"})

    def test_empty(self):
        with pytest.raises(ManifestError, match="Empty batch upload"):
            validate_batch_size([])

    def test_over_cap(self):
        with pytest.raises(ManifestError, match="Batch too large"):
            validate_batch_size([{}] * 11, max_records=10)

    def test_at_cap(self):
        validate_batch_size([{}] * 10, max_records=10)
