"""Terminal output helpers for the bulk-ingest CLI.

Plain ANSI formatting, switched off when stdout is not a TTY or when
``NO_COLOR`` is set.
"""

from __future__ import annotations

import os
import sys

_CODES = {
    "bold": "1",
    "dim": "2",
    "red": "31",
    "green": "32",
    "yellow": "33",
    "cyan": "36",
}

_ENABLED = bool(
    not os.environ.get("NO_COLOR")
    and hasattr(sys.stdout, "isatty")
    and sys.stdout.isatty()
)


def style(name: str, text: str) -> str:
    if not _ENABLED:
        return text
    return f"\033[{_CODES[name]}m{text}\033[0m"


def bold(text: str) -> str:
    return style("bold", text)


def dim(text: str) -> str:
    return style("dim", text)


# ── Lines ───────────────────────────────────────────────────────────


def _line(mark: str, msg: str) -> None:
    print(f"  {mark} {msg}" if mark else f"  {msg}")


def header(title: str) -> None:
    print(f"\n{bold(title)}")


def success(msg: str) -> None:
    _line(style("green", "✓"), msg)


def warn(msg: str) -> None:
    _line(style("yellow", "!"), msg)


def error(msg: str) -> None:
    _line(style("red", "✗"), msg)


def info(msg: str) -> None:
    _line("", msg)


def outcome(status: str, msg: str) -> None:
    """Report a finished import session, marked by how it ended."""
    if status == "completed":
        success(msg)
    elif status == "completed_with_errors":
        warn(msg)
    else:
        error(msg)


def kv(key: str, value: object, indent: int = 2) -> None:
    print(f"{' ' * indent}{dim(f'{key}:')}  {value}")


def table(headers: list[str], rows: list[list[str]], indent: int = 2) -> None:
    """Print left-aligned columns sized to their widest cell."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    pad = " " * indent
    print(pad + "  ".join(bold(h.ljust(w)) for h, w in zip(headers, widths, strict=True)))
    for row in rows:
        print(pad + "  ".join(cell.ljust(w) for cell, w in zip(row, widths, strict=True)))


def progress_bar(done: int, total: int, width: int = 30) -> str:
    ratio = done / total if total else 1.0
    filled = round(ratio * width)
    return f"[{'█' * filled}{'·' * (width - filled)}] {ratio * 100:5.1f}%"


def next_step(command: str, description: str = "") -> None:
    hint = f"  {dim(description)}" if description else ""
    print(f"    {style('cyan', command)}{hint}")


def banner() -> None:
    print(bold("bulk-ingest") + dim(": adaptive CSV, JSON and spreadsheet import"))
