from __future__ import annotations

import pytest

from bulk_ingest.exceptions import UnsupportedFileKindError
from bulk_ingest.extraction import (
    AdaptiveExtractor,
    ExtractorConfig,
    FileKind,
    StrategyRegistry,
    sniff_kind,
)
from bulk_ingest.extraction.analysis import PreAnalysis
from bulk_ingest.extraction.base import ExtractionStrategy, ParsedTable, build_table


class PipeOnlyStrategy(ExtractionStrategy):
    """Test strategy that always claims pipe-delimited input."""

    name = "pipe-only"
    priority = 200

    def can_handle(self, buffer: bytes) -> bool:
        return b"|" in buffer

    def parse(self, text: str) -> ParsedTable:
        rows = [line.split("|") for line in text.splitlines() if line]
        return build_table(rows, "|", True)

    def score(self, table: ParsedTable, parse_time_ms: float) -> float:
        return 99


# ── Kind detection ───────────────────────────────────────────────────


class TestSniffKind:
    def test_extension(self) -> None:
        assert sniff_kind(b"", "products.JSON") is FileKind.JSON
        assert sniff_kind(b"", "products.xlsx") is FileKind.SPREADSHEET
        assert sniff_kind(b"", "products.tsv") is FileKind.CSV

    def test_magic_bytes(self) -> None:
        assert sniff_kind(b"PK\x03\x04rest") is FileKind.SPREADSHEET
        assert sniff_kind(b'  [{"a": 1}]') is FileKind.JSON
        assert sniff_kind(b"a,b\n1,2") is FileKind.CSV

    def test_declared_kind_wins(self) -> None:
        assert sniff_kind(b"[1]", "x.json", "csv") is FileKind.CSV

    def test_unknown_declared_kind(self) -> None:
        with pytest.raises(UnsupportedFileKindError):
            sniff_kind(b"", "", "parquet")


# ── Strategy selection ───────────────────────────────────────────────


class TestSelection:
    def test_registry_orders_by_priority(self) -> None:
        names = [s.name for s in StrategyRegistry().strategies()]
        assert names == [
            "standard",
            "alternative-delimiters",
            "numeric-headerless",
            "complex-fields",
            "dirty-recovery",
        ]

    def test_unknown_strategy(self) -> None:
        with pytest.raises(ValueError, match="Unknown extraction strategy"):
            StrategyRegistry().get("nope")

    def test_cap_keeps_floor_strategy(self) -> None:
        extractor = AdaptiveExtractor(ExtractorConfig(max_strategies=2))
        analysis = PreAnalysis(delimiters=[";", ","], has_quotes=True)
        selected = [s.name for s in extractor.select_strategies(analysis)]
        assert selected == ["standard", "dirty-recovery"]

    def test_comma_only_file_skips_alternative_delimiters(self) -> None:
        extractor = AdaptiveExtractor()
        selected = [s.name for s in extractor.select_strategies(PreAnalysis(delimiters=[","]))]
        assert "alternative-delimiters" not in selected
        assert selected[-1] == "dirty-recovery"


# ── CSV extraction ───────────────────────────────────────────────────


async def test_standard_csv(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(
        b"name,price\nRed Shirt,19.99\nBlue Jeans,49.50\n", "products.csv"
    )
    assert result.success
    assert result.strategy == "standard"
    assert result.confidence >= 85
    assert result.metadata.has_headers
    assert result.columns == ["name", "price"]
    assert not result.needs_review


async def test_semicolon_csv(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(
        b"name;price;stock\nRed Shirt;19,99;10\nBlue Jeans;49,50;3\n", "products.csv"
    )
    assert result.success
    assert result.strategy == "alternative-delimiters"
    assert result.metadata.delimiter == ";"
    assert result.data[0]["name"] == "Red Shirt"


async def test_utf16_csv_without_bom(extractor: AdaptiveExtractor) -> None:
    buffer = "name,price\nWidget,9.99\nGadget,19.99\n".encode("utf-16-le")
    result = await extractor.extract(buffer, "export.csv")
    assert result.success
    assert result.strategy == "standard"
    assert result.metadata.encoding == "utf-16-le"
    assert result.columns == ["name", "price"]
    assert result.data[1] == {"name": "Gadget", "price": "19.99"}


async def test_sequential_mode_matches_parallel() -> None:
    extractor = AdaptiveExtractor(ExtractorConfig(parallel=False))
    result = await extractor.extract(b"name,price\nHat,12.00\nCap,9.50\n")
    assert result.strategy == "standard"
    assert result.data[1] == {"name": "Cap", "price": "9.50"}


async def test_low_confidence_uses_emergency_fallback(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(b"hello\nworld\n", "notes.csv")
    assert result.success
    assert result.strategy == "emergency-fallback"
    assert result.confidence == 30
    assert result.needs_review
    assert result.data == [{"column_1": "hello"}, {"column_1": "world"}]


async def test_blank_file_fails(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(b"  \n\n", "empty.csv")
    assert not result.success
    assert result.strategy == "none"
    assert result.error == "Unable to parse file with any strategy"
    assert result.data == []


async def test_min_confidence_is_applied() -> None:
    extractor = AdaptiveExtractor(ExtractorConfig(min_confidence=20))
    result = await extractor.extract(b"name,price\nHat,1\nCap,2\n")
    assert result.min_confidence == 20


async def test_custom_strategy_wins() -> None:
    registry = StrategyRegistry()
    registry.register(PipeOnlyStrategy())
    extractor = AdaptiveExtractor(ExtractorConfig(max_strategies=10), registry)

    result = await extractor.extract(b"name|price\nHat|12\nCap|9\n", "x.csv")

    assert result.strategy == "pipe-only"
    assert result.confidence == 99
    assert result.data == [{"name": "Hat", "price": "12"}, {"name": "Cap", "price": "9"}]


# ── JSON ─────────────────────────────────────────────────────────────


async def test_json_array(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(
        b'[{"name": "Hat", "price": 12.5}, {"name": "Cap", "price": 9}]', "items.json"
    )
    assert result.strategy == "json"
    assert result.confidence == 95
    assert result.data == [
        {"name": "Hat", "price": "12.5"},
        {"name": "Cap", "price": "9"},
    ]


async def test_json_ragged_objects(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(b'[{"a": 1}, {"b": true}]', "items.json")
    assert result.confidence == 85
    assert result.data == [{"a": "1", "b": None}, {"a": None, "b": "true"}]
    assert "Objects have differing keys" in result.metadata.issues


async def test_invalid_json(extractor: AdaptiveExtractor) -> None:
    result = await extractor.extract(b"[{oops", "items.json")
    assert not result.success
    assert result.error is not None
    assert result.error.startswith("Invalid JSON")
