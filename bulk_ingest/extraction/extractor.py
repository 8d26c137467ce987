from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import PurePath

from bulk_ingest.exceptions import UnsupportedFileKindError
from bulk_ingest.extraction.analysis import PreAnalysis, analyze
from bulk_ingest.extraction.base import (
    ExtractionStrategy,
    build_table,
    decode_buffer,
    positional_names,
)
from bulk_ingest.extraction.documents import OLE_MAGIC, read_json, read_spreadsheet
from bulk_ingest.extraction.registry import StrategyRegistry
from bulk_ingest.extraction.types import ExtractionMetadata, ExtractionResult, FileKind

logger = logging.getLogger(__name__)

EMERGENCY_CONFIDENCE = 30
EMERGENCY_STRATEGY = "emergency-fallback"

_EXTENSION_KINDS = {
    ".csv": FileKind.CSV,
    ".tsv": FileKind.CSV,
    ".txt": FileKind.CSV,
    ".json": FileKind.JSON,
    ".xlsx": FileKind.SPREADSHEET,
    ".xlsm": FileKind.SPREADSHEET,
    ".xls": FileKind.SPREADSHEET,
}
_ZIP_MAGIC = b"PK\x03\x04"


@dataclass
class ExtractorConfig:
    parallel: bool = True
    max_strategies: int = 5
    min_confidence: float = 70.0
    timeout: float = 30.0
    early_termination: bool = False


def sniff_kind(
    buffer: bytes,
    filename: str = "",
    declared: FileKind | str | None = None,
) -> FileKind:
    """Resolve the file kind from the declared kind, the extension, then the bytes."""
    if declared:
        try:
            return FileKind(declared)
        except ValueError:
            raise UnsupportedFileKindError(
                f"Unsupported file kind '{declared}'. "
                f"Available: {[k.value for k in FileKind]}"
            ) from None
    suffix = PurePath(filename).suffix.lower() if filename else ""
    if suffix in _EXTENSION_KINDS:
        return _EXTENSION_KINDS[suffix]
    if buffer.startswith(_ZIP_MAGIC) or buffer.startswith(OLE_MAGIC):
        return FileKind.SPREADSHEET
    head = buffer[:64].lstrip(b"\xef\xbb\xbf \t\r\n")
    if head[:1] in (b"[", b"{"):
        return FileKind.JSON
    return FileKind.CSV


class AdaptiveExtractor:
    """Pick, run and rank extraction strategies for one buffer.

    Usage::

        extractor = AdaptiveExtractor()
        result = await extractor.extract(buffer, "products.csv")
        if result.needs_review:
            ...

    CSV strategies are CPU-bound, so each runs in a worker thread via
    :func:`asyncio.to_thread`. With ``early_termination`` the first
    confident result is returned immediately; the remaining strategies
    keep running to completion in the background and are never
    cancelled.
    """

    def __init__(
        self,
        config: ExtractorConfig | None = None,
        registry: StrategyRegistry | None = None,
    ) -> None:
        self._config = config or ExtractorConfig()
        self._registry = registry or StrategyRegistry()
        self._background: set[asyncio.Task[ExtractionResult]] = set()

    @property
    def config(self) -> ExtractorConfig:
        return self._config

    async def extract(
        self,
        buffer: bytes,
        filename: str = "",
        kind: FileKind | str | None = None,
    ) -> ExtractionResult:
        resolved = sniff_kind(buffer, filename, kind)
        logger.info("Extracting %s as %s (%d bytes)", filename or "<buffer>", resolved, len(buffer))
        if resolved is FileKind.JSON:
            result = read_json(buffer, filename)
        elif resolved is FileKind.SPREADSHEET:
            result = await asyncio.to_thread(read_spreadsheet, buffer, filename)
        else:
            result = await self._extract_csv(buffer, filename)
        result.min_confidence = self._config.min_confidence
        return result

    # ── CSV ──────────────────────────────────────────────────────────

    def select_strategies(self, analysis: PreAnalysis) -> list[ExtractionStrategy]:
        """Candidates in priority order, capped, with the floor strategy always kept."""
        candidates = [s for s in self._registry.strategies() if s.is_candidate(analysis)]
        floors = [s for s in candidates if s.is_floor]
        others = [s for s in candidates if not s.is_floor]
        room = max(self._config.max_strategies - len(floors), 0)
        return others[:room] + floors

    async def _extract_csv(self, buffer: bytes, filename: str) -> ExtractionResult:
        analysis = analyze(buffer)
        selected = self.select_strategies(analysis)
        logger.info(
            "Pre-analysis: delimiters=%s columns~%d; trying %s",
            analysis.delimiters,
            analysis.estimated_columns,
            [s.name for s in selected],
        )

        if self._config.parallel:
            best = await self._run_parallel(selected, buffer, filename)
        else:
            best = await self._run_sequential(selected, buffer, filename)

        if best is not None and best.confidence >= self._config.min_confidence:
            logger.info("Selected %s (confidence %.1f)", best.strategy, best.confidence)
            return best

        logger.warning(
            "No strategy cleared confidence %.0f for %s; using emergency fallback",
            self._config.min_confidence,
            filename or "<buffer>",
        )
        return self._emergency_fallback(buffer, analysis)

    async def _run(
        self, strategy: ExtractionStrategy, buffer: bytes, filename: str
    ) -> ExtractionResult:
        try:
            if not strategy.can_handle(buffer):
                return ExtractionResult.failure(strategy.name, "Strategy cannot handle input")
            return await asyncio.wait_for(
                asyncio.to_thread(strategy.execute, buffer, filename),
                timeout=self._config.timeout,
            )
        except TimeoutError:
            logger.warning("Strategy %s timed out after %.1fs", strategy.name, self._config.timeout)
            return ExtractionResult.failure(strategy.name, "Strategy timed out")
        except Exception as exc:
            logger.exception("Strategy %s crashed", strategy.name)
            return ExtractionResult.failure(strategy.name, str(exc))

    async def _run_sequential(
        self, strategies: list[ExtractionStrategy], buffer: bytes, filename: str
    ) -> ExtractionResult | None:
        results = []
        for strategy in strategies:
            result = await self._run(strategy, buffer, filename)
            results.append((strategy, result))
            if result.success and result.confidence >= self._config.min_confidence:
                return result
        return self._best(results)

    async def _run_parallel(
        self, strategies: list[ExtractionStrategy], buffer: bytes, filename: str
    ) -> ExtractionResult | None:
        tasks = {
            asyncio.create_task(self._run(s, buffer, filename)): s for s in strategies
        }
        if not self._config.early_termination:
            results = await asyncio.gather(*tasks)
            return self._best(list(zip(tasks.values(), results, strict=True)))

        pending = set(tasks)
        finished = []
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                result = task.result()
                finished.append((tasks[task], result))
                if result.success and result.confidence >= self._config.min_confidence:
                    self._detach(pending)
                    return result
        return self._best(finished)

    def _detach(self, tasks: set[asyncio.Task[ExtractionResult]]) -> None:
        for task in tasks:
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    @staticmethod
    def _best(
        results: list[tuple[ExtractionStrategy, ExtractionResult]],
    ) -> ExtractionResult | None:
        """Highest confidence wins; ties go to the higher-priority strategy."""
        successful = [(s, r) for s, r in results if r.success]
        if not successful:
            return None
        return max(successful, key=lambda pair: (pair[1].confidence, pair[0].priority))[1]

    def _emergency_fallback(self, buffer: bytes, analysis: PreAnalysis) -> ExtractionResult:
        text, encoding = decode_buffer(buffer)
        delimiter = analysis.primary_delimiter
        rows = [
            [cell.strip() or None for cell in line.split(delimiter)]
            for line in re.split(r"\r\n|\r|\n", text)
            if line.strip()
        ]
        if not rows:
            return ExtractionResult(
                success=False,
                data=[],
                confidence=0,
                strategy="none",
                metadata=ExtractionMetadata(encoding=encoding),
                error="Unable to parse file with any strategy",
            )
        width = max(len(r) for r in rows)
        table = build_table(rows, delimiter, False, names=positional_names(width))
        return ExtractionResult(
            success=True,
            data=table.records,
            confidence=EMERGENCY_CONFIDENCE,
            strategy=EMERGENCY_STRATEGY,
            metadata=ExtractionMetadata(
                delimiter=delimiter,
                has_headers=False,
                encoding=encoding,
                quality_score=table.quality,
                issues=["Emergency fallback parsing - data quality may be compromised"],
            ),
        )
