from __future__ import annotations

import codecs

import pytest

from bulk_ingest.extraction.analysis import analyze
from bulk_ingest.extraction.base import (
    build_table,
    clean_cell,
    confidence_bonus,
    data_quality,
    decode_buffer,
    detect_headers,
    header_names,
    looks_numeric,
    read_rows,
    sanitize_field_name,
)
from bulk_ingest.extraction.types import ExtractionResult


class TestCells:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("  Red Shirt ", "Red Shirt"),
            ('"quoted"', "quoted"),
            ("'single'", "single"),
            ("   ", None),
            ("", None),
            (None, None),
            ('"', '"'),
        ],
    )
    def test_clean_cell(self, raw: str | None, expected: str | None) -> None:
        assert clean_cell(raw) == expected

    @pytest.mark.parametrize("value", ["1", "-2.5", ".5", "1e5", " 42 "])
    def test_numeric(self, value: str) -> None:
        assert looks_numeric(value)

    @pytest.mark.parametrize("value", ["abc", "1,5", "", None, "12px"])
    def test_not_numeric(self, value: str | None) -> None:
        assert not looks_numeric(value)


class TestHeaderNames:
    def test_sanitize(self) -> None:
        assert sanitize_field_name("  Product Name! ") == "product_name"
        assert sanitize_field_name("Unit-Price ($)") == "unit-price"
        assert sanitize_field_name(None) == ""

    def test_blank_and_duplicate_headers(self) -> None:
        assert header_names(["Name", "name", None, "Price"]) == [
            "name",
            "name_2",
            "column_3",
            "price",
        ]


class TestDetectHeaders:
    def test_text_over_numbers(self) -> None:
        assert detect_headers([["name", "price"], ["Hat", "12.00"]])

    def test_text_over_text(self) -> None:
        assert not detect_headers([["Hat", "red"], ["Shirt", "blue"]])

    def test_numeric_first_row(self) -> None:
        assert not detect_headers([["1", "2"], ["3", "4"]])

    def test_blank_header_cell(self) -> None:
        assert not detect_headers([["name", None], ["Hat", "12"]])

    def test_single_row(self) -> None:
        assert not detect_headers([["name", "price"]])

    def test_label_over_numeric_column_reads_as_header(self) -> None:
        # Known limitation: a data label here is indistinguishable from a header.
        assert detect_headers([["total"], ["12"], ["15"]])


class TestDecode:
    def test_utf8_bom(self) -> None:
        text, encoding = decode_buffer(codecs.BOM_UTF8 + b"name,price")
        assert text == "name,price"
        assert encoding == "utf-8-sig"

    def test_utf16_bom(self) -> None:
        text, encoding = decode_buffer(codecs.BOM_UTF16_LE + "a,b".encode("utf-16-le"))
        assert text == "a,b"
        assert encoding == "utf-16-le"

    def test_single_byte_text_is_detected(self) -> None:
        raw = "nom,prix\nCafé crème,3.50\nThé glacé,4.20\nCrêpe sucrée,5.00\n".encode("cp1252")
        text, encoding = decode_buffer(raw)
        assert "Café crème" in text
        assert encoding != "utf-8"

    def test_utf16_without_bom(self) -> None:
        raw = "name,price\nWidget,9.99\nGadget,19.99\n".encode("utf-16-le")
        text, encoding = decode_buffer(raw)
        assert text.startswith("name,price\nWidget,9.99")
        assert "\x00" not in text
        assert encoding == "utf-16-le"

    def test_utf16_big_endian_without_bom(self) -> None:
        text, encoding = decode_buffer("sku,stock\nA1,4\n".encode("utf-16-be"))
        assert text == "sku,stock\nA1,4\n"
        assert encoding == "utf-16-be"


class TestTables:
    def test_read_rows_skips_blank_lines(self) -> None:
        rows = read_rows("a,b\n\n1,2\n , \n", ",")
        assert rows == [["a", "b"], ["1", "2"]]

    def test_short_rows_padded_long_rows_truncated(self) -> None:
        rows = [["a", "b"], ["1"], ["2", "3", "4"]]
        table = build_table(rows, ",", True)
        assert table.records == [{"a": "1", "b": None}, {"a": "2", "b": "3"}]
        assert table.has_headers

    def test_positional_names_without_headers(self) -> None:
        table = build_table([["x", "y"], ["z"]], ",", False)
        assert list(table.records[0]) == ["column_1", "column_2"]
        assert table.records[1] == {"column_1": "z", "column_2": None}

    def test_data_quality(self) -> None:
        assert data_quality([]) == 0.0
        assert data_quality([["a", "b"], ["c", "d"]]) == 100.0
        assert data_quality([["a", None], ["c", None]]) == 87.5


class TestConfidenceBonus:
    def test_empty(self) -> None:
        assert confidence_bonus([]) == -50

    def test_clean_data_is_capped(self) -> None:
        records = [{"a": "1", "b": "x"}, {"a": "2", "b": "y"}]
        assert confidence_bonus(records) == 50

    def test_uniform_sparse_data(self) -> None:
        records = [{"a": "1", "b": None}, {"a": "1", "b": None}]
        # consistent columns only; 50% empty earns nothing
        assert confidence_bonus(records) == 20


class TestExtractionResult:
    def test_confidence_is_clamped(self) -> None:
        result = ExtractionResult(success=True, data=[{"a": "1"}], confidence=150, strategy="x")
        assert result.confidence == 100.0
        assert result.metadata.total_records == 1

    def test_failure_carries_no_data(self) -> None:
        result = ExtractionResult(success=False, data=[{"a": "1"}], confidence=50, strategy="x")
        assert result.data == []
        assert result.columns == []
        assert not result.needs_review

    def test_needs_review_below_floor(self) -> None:
        result = ExtractionResult(success=True, data=[{"a": "1"}], confidence=50, strategy="x")
        assert result.needs_review
        result.min_confidence = 40
        assert not result.needs_review


class TestPreAnalysis:
    def test_semicolon_file(self) -> None:
        analysis = analyze(b"name;price\nHat;12,50\nShirt;9,99\n")
        assert analysis.primary_delimiter == ";"
        assert analysis.plausible_delimiters == {";", ","}
        assert analysis.estimated_columns == 2
        assert analysis.has_text_headers
        assert not analysis.looks_numeric

    def test_numeric_file(self) -> None:
        analysis = analyze(b"1,2,3\n4,5,6\n")
        assert analysis.looks_numeric
        assert analysis.plausible_delimiters == {","}

    def test_crlf_and_empty_fields(self) -> None:
        analysis = analyze(b"a,b,c\r\n1,,3\r\n")
        assert analysis.line_ending == "crlf"
        assert analysis.has_empty_fields
