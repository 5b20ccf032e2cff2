"""
Manifest parsing

A manifest arrives as a CSV or JSON file (or as an already-decoded list of
records from the JSON endpoint), optionally with cover images.

CSV: header names are trimmed and lower-cased; blank lines are skipped.
JSON: a list of objects, or {"books": [...]}.

Images match records by file name stem, with an optional "isbn_" prefix:
    isbn_9780306406157.jpg -> record with that ISBN
    012345678905.png       -> record with that UPC
    3.jpg                  -> third record of the manifest
"""
import csv
import io
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from bookstack.core.exceptions import ManifestError
from bookstack.services.record_validator import normalize_isbn

logger = logging.getLogger(__name__)

MANIFEST_FIELDS = (
    "isbn", "upc", "asin", "title", "author", "publisher", "condition",
    "quantity", "description", "genre", "format", "shelf_location",
)

_IMAGE_KEY = re.compile(r"^(?:isbn_)?([^.]+)", re.IGNORECASE)


@dataclass
class UploadedImage:
    filename: str
    content: bytes
    content_type: Optional[str] = None


@dataclass
class Manifest:
    """What the client sent: a manifest file, or records already decoded."""
    filename: Optional[str] = None
    content: Optional[bytes] = None
    records: Optional[Any] = None
    images: List[UploadedImage] = field(default_factory=list)

    def parse(self) -> List[Dict[str, Any]]:
        if self.records is not None:
            return _check_records(self.records)
        if self.content is None:
            raise ManifestError("No manifest file or books provided")
        return parse_manifest(self.content, self.filename)


def _normalize_keys(record: Dict[str, Any]) -> Dict[str, Any]:
    return {str(key).strip().lower(): value for key, value in record.items() if key is not None}


def _check_records(records: Any) -> List[Dict[str, Any]]:
    if isinstance(records, dict) and "books" in records:
        records = records["books"]
    if not isinstance(records, list):
        raise ManifestError("Books must be an array")
    for index, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            raise ManifestError(f"Row {index}: each book must be an object", details={"row": index})
    return [_normalize_keys(record) for record in records]


def parse_csv(text: str) -> List[Dict[str, Any]]:
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        raise ManifestError("Empty batch upload")
    except csv.Error as e:
        raise ManifestError(f"Malformed CSV: {e}")

    columns = [name.strip().lower() for name in header]
    records = []
    try:
        for values in reader:
            if not any(v.strip() for v in values):
                continue
            records.append({
                column: values[i] if i < len(values) else ""
                for i, column in enumerate(columns) if column
            })
    except csv.Error as e:
        raise ManifestError(f"Malformed CSV at line {reader.line_num}: {e}")
    return records


def parse_json(text: str) -> List[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ManifestError(f"Malformed JSON manifest: {e.msg} (line {e.lineno})")
    except ValueError as e:
        # e.g. integer literals past the interpreter's digit limit
        raise ManifestError(f"Malformed JSON manifest: {e}")
    return _check_records(data)


def parse_manifest(content: bytes, filename: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Decode a manifest file into a list of field dicts.

    The file extension picks the format; without one, content starting with
    '[' or '{' is read as JSON and anything else as CSV.

    Raises:
        ManifestError: undecodable bytes, malformed CSV/JSON, unsupported extension
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ManifestError("Manifest must be UTF-8 encoded")

    extension = os.path.splitext(filename or "")[1].lower()
    if extension == ".json":
        return parse_json(text)
    if extension == ".csv":
        return parse_csv(text)
    if extension:
        raise ManifestError(f"Unsupported manifest type '{extension}'. Use .csv or .json")

    stripped = text.lstrip()
    if stripped.startswith(("[", "{")):
        return parse_json(text)
    return parse_csv(text)


def unknown_columns(records: List[Dict[str, Any]]) -> List[str]:
    """Columns present in the manifest that no record field reads."""
    seen = set()
    for record in records:
        seen.update(record.keys())
    return sorted(seen - set(MANIFEST_FIELDS))


def image_key(filename: str) -> Optional[str]:
    match = _IMAGE_KEY.match(os.path.basename(filename))
    return match.group(1) if match else None


def build_image_map(filenames: Iterable[str]) -> Dict[str, str]:
    """Stem (without "isbn_") -> original filename."""
    image_map = {}
    for filename in filenames:
        key = image_key(filename)
        if key:
            image_map[key] = filename
    return image_map


def match_image(record: Dict[str, Any], row_number: int, image_map: Dict[str, Any]) -> Optional[Any]:
    """Look up a record's image by ISBN, then UPC, then 1-based row number."""
    candidates = []
    isbn = str(record.get("isbn") or "").strip()
    if isbn:
        candidates.extend([isbn, normalize_isbn(isbn)])
    upc = str(record.get("upc") or "").strip()
    if upc:
        candidates.append(upc)
    candidates.append(str(row_number))

    for key in candidates:
        if key in image_map:
            return image_map[key]
    return None
