"""
Tests for manifest parsing and image matching.
"""
import pytest

from bookstack.core.exceptions import ManifestError
from bookstack.services.manifest_parser import (
    Manifest,
    build_image_map,
    match_image,
    parse_manifest,
    unknown_columns,
)


def test_csv_headers_are_trimmed_and_lowercased():
    content = b"\xef\xbb\xbf ISBN , Title,Quantity\n9780306406157,Waves,2\n\n,Second,\n"
    records = parse_manifest(content, "books.csv")

    assert records == [
        {"isbn": "9780306406157", "title": "Waves", "quantity": "2"},
        {"isbn": "", "title": "Second", "quantity": ""},
    ]


def test_json_list_and_books_object():
    assert parse_manifest(b'[{"Title": "A"}]', "m.json") == [{"title": "A"}]
    assert parse_manifest(b'{"books": [{"title": "B"}]}', "m.json") == [{"title": "B"}]


def test_format_sniffed_without_extension():
    assert parse_manifest(b'[{"title": "A"}]') == [{"title": "A"}]
    assert parse_manifest(b"title\nA\n") == [{"title": "A"}]


def test_malformed_json():
    with pytest.raises(ManifestError, match="Malformed JSON"):
        parse_manifest(b"[{", "m.json")


def test_oversized_json_number_is_malformed():
    content = b'[{"title": "A", "quantity": ' + b"9" * 5000 + b"}]"
    with pytest.raises(ManifestError, match="Malformed JSON"):
        parse_manifest(content, "m.json")


def test_json_must_hold_objects():
    with pytest.raises(ManifestError, match="each book must be an object"):
        parse_manifest(b'[{"title": "A"}, 3]', "m.json")


def test_unsupported_extension():
    with pytest.raises(ManifestError, match="Unsupported manifest type"):
        parse_manifest(b"title\nA", "books.xlsx")


def test_non_utf8_is_rejected():
    with pytest.raises(ManifestError, match="UTF-8"):
        parse_manifest(b"\xff\xfe\x00t", "books.csv")


def test_manifest_records_take_precedence_over_content():
    manifest = Manifest(records={"books": [{"TITLE": "x"}]}, content=b"ignored")
    assert manifest.parse() == [{"title": "x"}]


def test_manifest_without_input():
    with pytest.raises(ManifestError):
        Manifest().parse()


def test_unknown_columns():
    assert unknown_columns([{"title": "A", "colour": "red"}, {"isbn": "1", "notes": ""}]) == ["colour", "notes"]


class TestImageMatching:
    """Images are matched by ISBN, then UPC, then row number."""

    def setup_method(self):
        self.image_map = build_image_map([
            "isbn_9780306406157.jpg",
            "012345678905.png",
            "3.jpg",
        ])

    def test_by_isbn_with_prefix(self):
        record = {"isbn": "978-0-306-40615-7"}
        assert match_image(record, 1, self.image_map) == "isbn_9780306406157.jpg"

    def test_by_upc(self):
        assert match_image({"upc": "012345678905"}, 1, self.image_map) == "012345678905.png"

    def test_by_row_number(self):
        assert match_image({"title": "No ids"}, 3, self.image_map) == "3.jpg"

    def test_no_match(self):
        assert match_image({"title": "No ids"}, 2, self.image_map) is None
