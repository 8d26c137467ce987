from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bulk_ingest.cli import output as out
from bulk_ingest.cli.config import (
    STORE_PROVIDERS,
    Config,
    config_exists,
    config_path_display,
    load_config,
    save_config,
)

if TYPE_CHECKING:
    from bulk_ingest import BulkIngest, FieldMapping, FileAnalysis

DESCRIPTION = """\
bulk-ingest: adaptive CSV, JSON and spreadsheet import

Parses messy tabular files with several competing strategies, infers
what each column holds, suggests target fields from mappings you have
confirmed before, and loads the rows in concurrent batches with a
per-record audit log.

Quick start: bulk-ingest inspect products.csv"""

ENTITY_TYPES = ("product", "brand", "attribute")


# ── Infrastructure helpers ──────────────────────────────────────────


def _build_ingest(cfg: Config, **overrides: Any) -> BulkIngest:
    from bulk_ingest import BulkIngest

    config = cfg.to_dict()
    for section, values in overrides.items():
        config.setdefault(section, {}).update(values)
    return BulkIngest.from_config(config)


def _read_file(path_str: str) -> tuple[bytes, str]:
    path = Path(path_str)
    if not path.is_file():
        out.error(f"File not found: {path_str}")
        sys.exit(1)
    return path.read_bytes(), path.name


def _parse_mappings(pairs: list[str]) -> list[FieldMapping]:
    from bulk_ingest import FieldMapping

    mappings = []
    for pair in pairs:
        source, sep, target = pair.partition("=")
        if not sep or not source.strip() or not target.strip():
            out.error(f"Invalid mapping '{pair}'. Expected SOURCE=TARGET")
            sys.exit(1)
        mappings.append(FieldMapping(source.strip(), target.strip()))
    return mappings


def _suggested_mappings(analysis: FileAnalysis, explicit: list[FieldMapping]) -> list[FieldMapping]:
    """Fill unmapped columns with their best suggestion."""
    from bulk_ingest import FieldMapping

    taken_sources = {m.source_field for m in explicit}
    taken_targets = {m.target_field for m in explicit}
    filled = list(explicit)
    for field_suggestions in analysis.suggestions:
        if field_suggestions.source_field in taken_sources or not field_suggestions.suggestions:
            continue
        best = field_suggestions.suggestions[0]
        if best.target_field in taken_targets:
            continue
        filled.append(
            FieldMapping(
                best.source_field,
                best.target_field,
                confidence=best.predicted_confidence,
                strategy=best.match,
            )
        )
        taken_targets.add(best.target_field)
    return filled


def _require_persistent(cfg: Config, command: str) -> None:
    """Exit with guidance if sessions would not outlive this process."""
    if cfg.is_persistent:
        return
    out.error(f"'{command}' needs a persistent store to find earlier sessions.")
    print()
    out.info("To keep sessions between commands:")
    out.next_step("bulk-ingest config set-store sqlite")
    out.next_step("bulk-ingest config set-store postgres")
    sys.exit(1)


class _ConsoleConnection:
    """Progress-channel client that renders lifecycle messages to stdout."""

    def __init__(self) -> None:
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, text: str) -> None:
        message = json.loads(text)
        data = message.get("data", {})
        match message["type"]:
            case "progress":
                bar = out.progress_bar(data["processedRecords"], data["totalRecords"])
                rate = data["processingRate"]
                print(f"  {bar}  {data['processedRecords']:,} rows  {rate:,.0f}/s", flush=True)
            case "batch_completed":
                out.info(
                    out.dim(
                        f"batch {data['batchNumber']}: {data['successCount']} ok, "
                        f"{data['failureCount']} failed"
                    )
                )
            case "error":
                out.error(data["error"])
            case "cancelled":
                out.warn("Import cancelled")

    async def ping(self) -> None:
        pass

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._open = False


# ── config ──────────────────────────────────────────────────────────


async def cmd_config_show(args: argparse.Namespace) -> None:
    """Display current configuration."""
    cfg = load_config()

    out.header(f"Configuration ({config_path_display()})")
    print()
    out.kv("Store", cfg.store_description())
    out.kv("Batch size", cfg.batch_size)
    out.kv("Max concurrency", cfg.max_concurrency)
    out.kv("Min confidence", cfg.min_confidence)

    print()
    out.info("To change settings:")
    out.next_step("bulk-ingest config set-store sqlite", "keep sessions in a local file")
    out.next_step("bulk-ingest config set-store postgres", "set up PostgreSQL")
    out.next_step("bulk-ingest config set-store memory", "switch to in-memory")
    print()


async def cmd_config_set_store(args: argparse.Namespace) -> None:
    """Configure the store backend."""
    cfg = load_config() if config_exists() else Config()
    backend = args.backend
    cfg.store_provider = backend

    if backend == "memory":
        path = save_config(cfg)
        out.success(f"Store set to in-memory. Config written to {path}")
        out.info("Sessions and learned patterns only last for a single command.")
        return

    if backend == "sqlite":
        if args.path:
            cfg.sqlite_path = args.path
        path = save_config(cfg)
        out.success(f"Store set to sqlite ({cfg.sqlite_path}). Config written to {path}")
    else:
        out.info("Setting up PostgreSQL for persistent storage across commands.\n")
        host = input(f"  Database host [{cfg.db_host}]: ").strip() or cfg.db_host
        port = input(f"  Database port [{cfg.db_port}]: ").strip() or str(cfg.db_port)
        name = input(f"  Database name [{cfg.db_name}]: ").strip() or cfg.db_name
        user = input(f"  Database user [{cfg.db_user}]: ").strip() or cfg.db_user
        password = (
            input(f"  Database password [{cfg.db_password}]: ").strip() or cfg.db_password
        )
        cfg.db_host = host
        cfg.db_port = int(port)
        cfg.db_name = name
        cfg.db_user = user
        cfg.db_password = password
        path = save_config(cfg)
        out.success(f"PostgreSQL configured. Config written to {path}")

    try:
        ingest = _build_ingest(cfg)
        await ingest.store.init()
        await ingest.store.close()
        out.success("Store initialised")
    except Exception as exc:
        out.warn(f"Could not initialise store: {exc}")
        out.info(f"You can retry later with: bulk-ingest config set-store {backend}")


async def cmd_config_path(args: argparse.Namespace) -> None:
    """Print the config file path."""
    print(config_path_display())


# ── inspect ─────────────────────────────────────────────────────────


def _print_analysis(analysis: FileAnalysis, sample_rows: int) -> None:
    extraction = analysis.extraction
    meta = extraction.metadata

    out.kv("Strategy", extraction.strategy)
    out.kv("Confidence", f"{extraction.confidence:.0f}")
    out.kv("Records", f"{meta.total_records:,}")
    out.kv("Delimiter", repr(meta.delimiter))
    out.kv("Headers", "yes" if meta.has_headers else "no")
    out.kv("Encoding", meta.encoding)
    out.kv("Parse time", f"{meta.parse_time_ms:.1f} ms")
    for issue in meta.issues:
        out.warn(issue)
    if analysis.needs_review:
        out.warn("Low confidence parse: check the records below before importing")

    print()
    out.header("Fields")
    rows = []
    for descriptor in analysis.structure.fields:
        suggestions = analysis.suggestions_for(descriptor.name)
        suggested = ""
        if suggestions is not None and suggestions.suggestions:
            best = suggestions.suggestions[0]
            suggested = f"{best.target_field} ({best.predicted_confidence:.0f}, {best.match})"
        rows.append(
            [
                descriptor.name,
                descriptor.type_label,
                f"{descriptor.null_percentage:.1f}%",
                "yes" if descriptor.required else "",
                ", ".join(descriptor.sample_values[:3]),
                suggested,
            ]
        )
    out.table(["Field", "Type", "Null", "Required", "Samples", "Suggested target"], rows)
    out.kv("Structure confidence", f"{analysis.structure.confidence:.2f}")

    if sample_rows:
        print()
        out.header(f"First {min(sample_rows, len(analysis.records))} records")
        for record in analysis.records[:sample_rows]:
            out.info(out.dim(json.dumps(record, ensure_ascii=False, default=str)))


async def cmd_inspect(args: argparse.Namespace) -> None:
    from bulk_ingest import ExtractionFailedError

    cfg = load_config()
    buffer, filename = _read_file(args.path)

    out.header(f"Inspecting {filename}")
    print()

    ingest = _build_ingest(cfg)
    await ingest.init()
    try:
        analysis = await ingest.analyze(buffer, filename, args.kind)
    except ExtractionFailedError as exc:
        out.error(exc.message)
        sys.exit(1)
    finally:
        await ingest.close()

    _print_analysis(analysis, args.rows)

    print()
    out.header("Next step:")
    out.next_step(f"bulk-ingest import {args.path} --entity product --map SOURCE=TARGET")
    print()


# ── import ──────────────────────────────────────────────────────────


async def cmd_import(args: argparse.Namespace) -> None:
    from bulk_ingest import ExtractionFailedError
    from bulk_ingest.models import RecordStatus

    cfg = load_config()
    buffer, filename = _read_file(args.path)
    explicit = _parse_mappings(args.map or [])

    overrides: dict[str, Any] = {}
    if args.batch_size:
        overrides["loading"] = {"batch_size": args.batch_size}
    ingest = _build_ingest(cfg, **overrides)
    await ingest.init()

    try:
        try:
            analysis = await ingest.analyze(buffer, filename, args.kind)
        except ExtractionFailedError as exc:
            out.error(exc.message)
            sys.exit(1)

        mappings = _suggested_mappings(analysis, explicit) if args.suggested else explicit
        if not mappings:
            out.error("No field mappings. Pass --map SOURCE=TARGET or --suggested.")
            sys.exit(1)

        out.header(f"Importing {filename} as {args.entity}")
        out.kv("Records", f"{len(analysis.records):,}")
        out.kv("Parsed by", f"{analysis.extraction.strategy} ({analysis.extraction.confidence:.0f})")
        for mapping in mappings:
            out.kv(mapping.source_field, f"→ {mapping.target_field}", indent=4)
        if analysis.needs_review:
            out.warn("Low confidence parse; continuing anyway")
        print()

        session = await ingest.create_session(
            args.entity,
            mappings,
            total_records=len(analysis.records),
            file_name=filename,
        )
        await ingest.channel.connect(_ConsoleConnection(), session.id, "cli")
        session = await ingest.run_import(session.id, analysis.records, learn=not args.no_learn)
        # Flush queued progress messages before printing the summary.
        await ingest.channel.stop()

        print()
        summary = f"Import {session.status.replace('_', ' ')}"
        if session.error_message:
            summary += f": {session.error_message}"
        out.outcome(session.status, summary)
        out.kv("Session ID", session.id)
        out.kv("Successful", f"{session.successful_records:,}")
        out.kv("Failed", f"{session.failed_records:,}")

        if session.failed_records and args.show_failures:
            failures = await ingest.session_records(session.id, status=RecordStatus.FAILED)
            print()
            out.header("Failed records")
            for log in failures[: args.show_failures]:
                out.error(f"row {log.record_index + 1}: {'; '.join(log.validation_errors)}")
            if len(failures) > args.show_failures:
                out.info(out.dim(f"... and {len(failures) - args.show_failures} more"))
            if cfg.is_persistent:
                print()
                out.header("Next step:")
                out.next_step(f"bulk-ingest retry {session.id}", "after fixing the source data")
    finally:
        await ingest.close()
    print()


async def cmd_retry(args: argparse.Namespace) -> None:
    from bulk_ingest import SessionNotFoundError

    cfg = load_config()
    _require_persistent(cfg, "retry")

    ingest = _build_ingest(cfg)
    await ingest.init()
    try:
        session = await ingest.retry_failed(args.session_id)
    except SessionNotFoundError as exc:
        out.error(exc.message)
        sys.exit(1)
    finally:
        await ingest.close()

    if session is None:
        out.info("Nothing to retry: the session has no failed records.")
        return
    out.outcome(session.status, f"Retry session {session.id} {session.status}")
    out.kv("Successful", f"{session.successful_records:,}")
    out.kv("Failed", f"{session.failed_records:,}")


# ── patterns ────────────────────────────────────────────────────────


async def cmd_patterns_stats(args: argparse.Namespace) -> None:
    cfg = load_config()
    ingest = _build_ingest(cfg)
    await ingest.init()
    try:
        stats = await ingest.learning_statistics()
    finally:
        await ingest.close()

    out.header("Learned mapping patterns")
    print()
    out.kv("Patterns", stats.total_patterns)
    out.kv("Average usage", f"{stats.average_usage:.1f}")
    out.kv("Average success rate", f"{stats.average_success_rate:.1f}")
    out.kv("High confidence", stats.high_confidence_patterns)
    out.kv("Used in the last 7 days", stats.recently_used)
    if stats.strategies:
        print()
        out.info("By strategy:")
        for strategy, count in sorted(stats.strategies.items(), key=lambda kv: -kv[1]):
            out.kv(strategy, count, indent=4)
    print()


async def cmd_patterns_prune(args: argparse.Namespace) -> None:
    cfg = load_config()
    ingest = _build_ingest(cfg)
    await ingest.init()
    try:
        removed = await ingest.prune_patterns()
    finally:
        await ingest.close()
    out.success(f"Removed {removed} stale pattern{'s' if removed != 1 else ''}")


# ── Parser ──────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulk-ingest",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  bulk-ingest inspect products.csv               "
            "Show how the file parses\n"
            "  bulk-ingest import products.csv --entity product \\\n"
            "      --map 'Product Name=name' --map Price=price\n"
            "  bulk-ingest import products.csv --entity product --suggested\n"
            "  bulk-ingest patterns stats                     "
            "Learned mapping statistics\n"
            "\n"
            "Configuration:\n"
            "  bulk-ingest config show                        "
            "Show current settings\n"
            "  bulk-ingest config set-store sqlite            "
            "Keep sessions and patterns\n"
            "  bulk-ingest config path                        "
            "Print config file location\n"
        ),
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed logs (strategies, batches, retries)",
    )
    sub = parser.add_subparsers(dest="command", title="commands")

    p_inspect = sub.add_parser("inspect", help="Parse a file and describe its fields")
    p_inspect.add_argument("path", help="CSV, JSON or spreadsheet file")
    p_inspect.add_argument(
        "--kind", choices=["csv", "json", "spreadsheet"], help="Override file kind detection"
    )
    p_inspect.add_argument(
        "--rows", type=int, default=3, help="Number of parsed records to print (default: 3)"
    )

    p_import = sub.add_parser("import", help="Import a file into the store")
    p_import.add_argument("path", help="CSV, JSON or spreadsheet file")
    p_import.add_argument("--entity", required=True, choices=ENTITY_TYPES, help="Entity type")
    p_import.add_argument(
        "--map",
        action="append",
        metavar="SOURCE=TARGET",
        help="Map a source column to a target field (repeatable)",
    )
    p_import.add_argument(
        "--suggested",
        action="store_true",
        help="Map remaining columns using learned suggestions",
    )
    p_import.add_argument(
        "--kind", choices=["csv", "json", "spreadsheet"], help="Override file kind detection"
    )
    p_import.add_argument("--batch-size", type=int, help="Records per batch")
    p_import.add_argument(
        "--no-learn", action="store_true", help="Do not remember these mappings"
    )
    p_import.add_argument(
        "--show-failures",
        type=int,
        default=10,
        metavar="N",
        help="Print up to N failed records (default: 10)",
    )

    p_retry = sub.add_parser("retry", help="Re-import the failed records of a session")
    p_retry.add_argument("session_id", help="Session to retry")

    p_pat = sub.add_parser("patterns", help="Inspect learned mapping patterns")
    pat_sub = p_pat.add_subparsers(dest="patterns_command", title="patterns commands")
    pat_sub.add_parser("stats", help="Show pattern statistics")
    pat_sub.add_parser("prune", help="Delete stale, rarely used patterns")

    p_cfg = sub.add_parser("config", help="View and change settings")
    cfg_sub = p_cfg.add_subparsers(dest="config_command", title="config commands")
    cfg_sub.add_parser("show", help="Show current settings")
    p_cfg_store = cfg_sub.add_parser("set-store", help="Configure the store backend")
    p_cfg_store.add_argument("backend", choices=STORE_PROVIDERS, help="Store backend to use")
    p_cfg_store.add_argument("--path", help="Database file for the sqlite backend")
    cfg_sub.add_parser("path", help="Print config file location")

    return parser


# ── Dispatch ────────────────────────────────────────────────────────

_CommandHandler = Callable[[argparse.Namespace], Coroutine[Any, Any, None]]

_COMMAND_MAP: dict[str, _CommandHandler] = {
    "inspect": cmd_inspect,
    "import": cmd_import,
    "retry": cmd_retry,
}

_PATTERNS_MAP: dict[str, _CommandHandler] = {
    "stats": cmd_patterns_stats,
    "prune": cmd_patterns_prune,
}

_CONFIG_MAP: dict[str, _CommandHandler] = {
    "show": cmd_config_show,
    "set-store": cmd_config_set_store,
    "path": cmd_config_path,
}


def main() -> None:
    import logging

    parser = _build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="  %(name)s: %(message)s",
        )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    if not args.command:
        out.banner()
        parser.print_help()
        return

    if args.command == "patterns":
        if not args.patterns_command:
            parser.parse_args(["patterns", "--help"])
            return
        handler = _PATTERNS_MAP.get(args.patterns_command)
    elif args.command == "config":
        if not args.config_command:
            parser.parse_args(["config", "--help"])
            return
        handler = _CONFIG_MAP.get(args.config_command)
    else:
        handler = _COMMAND_MAP.get(args.command)

    if handler is None:
        parser.print_help()
        return

    try:
        asyncio.run(handler(args))
    except KeyboardInterrupt:
        print()


if __name__ == "__main__":
    main()
