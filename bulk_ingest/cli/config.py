"""Configuration management for the bulk-ingest CLI.

Reads/writes a TOML config file and provides a typed Config dataclass.
Default location: ``~/.config/bulk-ingest/config.toml``.
Override with the ``BULK_INGEST_CONFIG`` environment variable.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_DEFAULT_CONFIG_DIR = Path("~/.config/bulk-ingest").expanduser()

STORE_PROVIDERS = ("memory", "sqlite", "postgres")


def _config_path() -> Path:
    env = os.environ.get("BULK_INGEST_CONFIG")
    if env:
        return Path(env).expanduser()
    return _DEFAULT_CONFIG_DIR / "config.toml"


@dataclass
class Config:
    # "memory" (default, nothing persists), "sqlite" or "postgres"
    store_provider: str = "memory"

    sqlite_path: str = "bulk_ingest.db"

    # Postgres settings (only used when store_provider == "postgres")
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "bulk_ingest"
    db_user: str = "postgres"
    db_password: str = "postgres"

    batch_size: int = 100
    max_concurrency: int = 5
    min_confidence: float = 70.0

    @property
    def is_persistent(self) -> bool:
        return self.store_provider != "memory"

    def store_description(self) -> str:
        if self.store_provider == "postgres":
            return f"postgres ({self.db_host}:{self.db_port}/{self.db_name})"
        if self.store_provider == "sqlite":
            return f"sqlite ({self.sqlite_path})"
        return "memory (in-memory, no persistence)"

    def to_dict(self) -> dict[str, Any]:
        """Canonical config dict for :meth:`BulkIngest.from_config`."""
        store_config: dict[str, Any] = {}
        if self.store_provider == "postgres":
            store_config = {
                "host": self.db_host,
                "port": self.db_port,
                "database": self.db_name,
                "user": self.db_user,
                "password": self.db_password,
            }
        elif self.store_provider == "sqlite":
            store_config = {"path": self.sqlite_path}

        return {
            "store": {"provider": self.store_provider, "config": store_config},
            "extraction": {"min_confidence": self.min_confidence},
            "loading": {
                "batch_size": self.batch_size,
                "max_concurrency": self.max_concurrency,
            },
        }


def load_config() -> Config:
    """Load config from disk, falling back to defaults + env overrides."""
    path = _config_path()
    cfg = Config()

    if path.exists():
        with open(path, "rb") as f:
            data = tomllib.load(f)
        store_section = data.get("store", {})
        sqlite_section = data.get("sqlite", {})
        db_section = data.get("database", {})
        loading_section = data.get("loading", {})
        extraction_section = data.get("extraction", {})

        cfg.store_provider = store_section.get("provider", cfg.store_provider)
        cfg.sqlite_path = sqlite_section.get("path", cfg.sqlite_path)

        cfg.db_host = db_section.get("host", cfg.db_host)
        cfg.db_port = int(db_section.get("port", cfg.db_port))
        cfg.db_name = db_section.get("name", cfg.db_name)
        cfg.db_user = db_section.get("user", cfg.db_user)
        cfg.db_password = db_section.get("password", cfg.db_password)

        cfg.batch_size = int(loading_section.get("batch_size", cfg.batch_size))
        cfg.max_concurrency = int(loading_section.get("max_concurrency", cfg.max_concurrency))
        cfg.min_confidence = float(extraction_section.get("min_confidence", cfg.min_confidence))

    # Environment variables always take precedence
    cfg.store_provider = os.environ.get("BULK_INGEST_STORE", cfg.store_provider)
    cfg.db_host = os.environ.get("POSTGRES_HOST", cfg.db_host)
    cfg.db_port = int(os.environ.get("POSTGRES_PORT", str(cfg.db_port)))
    cfg.db_name = os.environ.get("POSTGRES_DB", cfg.db_name)
    cfg.db_user = os.environ.get("POSTGRES_USER", cfg.db_user)
    cfg.db_password = os.environ.get("POSTGRES_PASSWORD", cfg.db_password)

    return cfg


def save_config(cfg: Config) -> Path:
    """Write config to the TOML file. Returns the path written."""
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        "[store]",
        f'provider = "{cfg.store_provider}"',
        "",
    ]

    if cfg.store_provider == "sqlite":
        lines.extend(["[sqlite]", f'path = "{cfg.sqlite_path}"', ""])

    if cfg.store_provider == "postgres":
        lines.extend(
            [
                "[database]",
                f'host = "{cfg.db_host}"',
                f"port = {cfg.db_port}",
                f'name = "{cfg.db_name}"',
                f'user = "{cfg.db_user}"',
                f'password = "{cfg.db_password}"',
                "",
            ]
        )

    lines.extend(
        [
            "[extraction]",
            f"min_confidence = {cfg.min_confidence}",
            "",
            "[loading]",
            f"batch_size = {cfg.batch_size}",
            f"max_concurrency = {cfg.max_concurrency}",
            "",
        ]
    )

    path.write_text("\n".join(lines), encoding="utf-8")
    return path


def config_exists() -> bool:
    return _config_path().exists()


def config_path_display() -> str:
    return str(_config_path())
