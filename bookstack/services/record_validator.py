"""
Record Validator/Sanitizer

Pure checks on one manifest record, plus the batch-level size check.

Rules:
- At least one of isbn / upc / asin / title
- ISBN (hyphens and spaces ignored) must pass the ISBN-10 or ISBN-13 checksum
- quantity: integer 1-1000, blank means 1
- condition: New, Like New, Very Good, Good, Acceptable, Poor (any case), blank means Good
- title and author: at most 255 characters (rejected, not truncated)
- publisher capped at 255, genre at 100, description at 5000 (truncated)
"""
import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from bookstack.core.exceptions import ManifestError

VALID_CONDITIONS = ["New", "Like New", "Very Good", "Good", "Acceptable", "Poor"]
DEFAULT_CONDITION = "Good"
_CONDITION_LOOKUP = {c.lower(): c for c in VALID_CONDITIONS}

MIN_QUANTITY = 1
MAX_QUANTITY = 1000
DEFAULT_MAX_BATCH_RECORDS = 1000

MAX_TITLE_LENGTH = 255
MAX_AUTHOR_LENGTH = 255
MAX_PUBLISHER_LENGTH = 255
MAX_GENRE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 5000
MAX_IDENTIFIER_LENGTH = 20
MAX_SHORT_FIELD_LENGTH = 50

_ISBN_SEPARATORS = re.compile(r"[-\s]")


# =============================================================================
# ISBN CHECKSUMS
# =============================================================================

def normalize_isbn(isbn: str) -> str:
    """Strip hyphens and whitespace; upper-case a trailing x."""
    return _ISBN_SEPARATORS.sub("", str(isbn)).upper()


def is_valid_isbn10(isbn: str) -> bool:
    if not re.fullmatch(r"\d{9}[\dX]", isbn):
        return False
    total = sum(int(digit) * (10 - i) for i, digit in enumerate(isbn[:9]))
    total += 10 if isbn[9] == "X" else int(isbn[9])
    return total % 11 == 0


def is_valid_isbn13(isbn: str) -> bool:
    if not re.fullmatch(r"\d{13}", isbn):
        return False
    total = sum(int(digit) * (1 if i % 2 == 0 else 3) for i, digit in enumerate(isbn[:12]))
    return (10 - total % 10) % 10 == int(isbn[12])


def is_valid_isbn(isbn: str) -> bool:
    cleaned = normalize_isbn(isbn)
    if len(cleaned) == 10:
        return is_valid_isbn10(cleaned)
    if len(cleaned) == 13:
        return is_valid_isbn13(cleaned)
    return False


# =============================================================================
# RECORD VALIDATION
# =============================================================================

@dataclass
class SanitizedRecord:
    """A record that passed validation: trimmed, capped and defaulted."""
    isbn: Optional[str] = None
    upc: Optional[str] = None
    asin: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    format: Optional[str] = None
    condition: str = DEFAULT_CONDITION
    quantity: int = 1
    shelf_location: Optional[str] = None


@dataclass
class ValidationResult:
    row_number: int
    record: Optional[SanitizedRecord] = None
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _cap(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else value


def _parse_quantity(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return 1
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value).strip()
    # int() refuses digit strings past the interpreter limit
    if re.fullmatch(r"[+-]?\d{1,9}", text):
        return int(text)
    return None


def validate_record(raw: Mapping[str, Any], row_number: int) -> ValidationResult:
    """
    Validate and sanitize one manifest record.

    Args:
        raw: Field name -> value, as parsed from the manifest
        row_number: 1-based position in the manifest, used in error messages

    Returns:
        ValidationResult with either a SanitizedRecord or a list of errors
    """
    prefix = f"Row {row_number}: "
    errors: List[str] = []

    isbn = _text(raw.get("isbn"))
    upc = _text(raw.get("upc"))
    asin = _text(raw.get("asin"))
    title = _text(raw.get("title"))
    author = _text(raw.get("author"))

    if not any((isbn, upc, asin, title)):
        errors.append(f"{prefix}At least one identifier (ISBN, UPC, ASIN, or title) is required")

    if isbn:
        if is_valid_isbn(isbn):
            isbn = normalize_isbn(isbn)
        else:
            errors.append(f"{prefix}Invalid ISBN format: {isbn}")

    quantity = _parse_quantity(raw.get("quantity"))
    if quantity is None or not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
        errors.append(
            f"{prefix}Quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}, "
            f"got: {str(raw.get('quantity'))[:20]}"
        )

    condition_raw = _text(raw.get("condition"))
    condition = DEFAULT_CONDITION
    if condition_raw:
        condition = _CONDITION_LOOKUP.get(" ".join(condition_raw.lower().split()))
        if condition is None:
            errors.append(f"{prefix}Invalid condition. Must be one of: {', '.join(VALID_CONDITIONS)}")

    if title and len(title) > MAX_TITLE_LENGTH:
        errors.append(f"{prefix}Title too long (max {MAX_TITLE_LENGTH} characters)")
    if author and len(author) > MAX_AUTHOR_LENGTH:
        errors.append(f"{prefix}Author too long (max {MAX_AUTHOR_LENGTH} characters)")
    for name, value in (("UPC", upc), ("ASIN", asin)):
        if value and len(value) > MAX_IDENTIFIER_LENGTH:
            errors.append(f"{prefix}{name} too long (max {MAX_IDENTIFIER_LENGTH} characters)")

    if errors:
        return ValidationResult(row_number=row_number, errors=errors)

    return ValidationResult(
        row_number=row_number,
        record=SanitizedRecord(
            isbn=isbn,
            upc=upc,
            asin=asin,
            title=title,
            author=author,
            publisher=_cap(_text(raw.get("publisher")), MAX_PUBLISHER_LENGTH),
            description=_cap(_text(raw.get("description")), MAX_DESCRIPTION_LENGTH),
            genre=_cap(_text(raw.get("genre")), MAX_GENRE_LENGTH),
            format=_cap(_text(raw.get("format")), MAX_SHORT_FIELD_LENGTH),
            condition=condition,
            quantity=quantity,
            shelf_location=_cap(_text(raw.get("shelf_location")), MAX_SHORT_FIELD_LENGTH),
        ),
    )


def validate_batch_size(records: Any, max_records: int = DEFAULT_MAX_BATCH_RECORDS) -> None:
    """
    Raises:
        ManifestError: not a list, empty, or more than max_records entries
    """
    if not isinstance(records, list):
        raise ManifestError("Books must be an array")
    if not records:
        raise ManifestError("Empty batch upload")
    if len(records) > max_records:
        raise ManifestError(
            f"Batch too large: {len(records)} books (max {max_records})",
            details={"records": len(records), "max_records": max_records},
        )


def identifier_of(raw: Mapping[str, Any]) -> Optional[str]:
    """Best identifier for error logs."""
    for key in ("isbn", "upc", "asin", "title"):
        value = _text(raw.get(key))
        if value:
            return value
    return None
