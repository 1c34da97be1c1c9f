"""
Configuration management for Stringscope.

Loads and validates stringscope.yml:
- corpus: where the searchable files and database live
- search: batch sizes, time/memory budgets, result ceilings
- server: HTTP API bind address and optional access token
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "stringscope.yml"
STATE_DIRNAME = ".stringscope"

_SIZE_UNITS = {"k": 1024, "m": 1024 * 1024, "g": 1024 * 1024 * 1024}


def parse_size(value: str | int | None) -> int:
    """Parse a size like ``512M``, ``1g``, ``256K`` or ``1048576`` into bytes."""
    if value is None:
        return 0
    if isinstance(value, int):
        return max(0, value)
    text = str(value).strip().lower()
    if not text:
        return 0
    if text.endswith("b") and len(text) > 1 and text[-2] in _SIZE_UNITS:
        text = text[:-1]
    unit = text[-1]
    if unit in _SIZE_UNITS:
        number = text[:-1].strip()
        multiplier = _SIZE_UNITS[unit]
    else:
        number = text
        multiplier = 1
    try:
        return max(0, int(float(number) * multiplier))
    except ValueError as exc:
        raise ValueError(f"Invalid size value: {value!r}") from exc


@dataclass
class CorpusConfig:
    """Where the searchable corpus lives."""

    root: str = "."
    content_dir: str = "content"
    groups: dict[str, str] = field(default_factory=dict)  # group name -> dir relative to root
    database: str | None = None

    def resolved_root(self, base: Path | None = None) -> Path:
        path = Path(self.root).expanduser()
        if not path.is_absolute() and base is not None:
            path = base / path
        return path.resolve()

    def resolved_database(self, base: Path | None = None) -> Path | None:
        if not self.database:
            return None
        path = Path(self.database).expanduser()
        if not path.is_absolute() and base is not None:
            path = base / path
        return path.resolve()


@dataclass
class SearchConfig:
    """Batch sizes and resource budgets for search sessions."""

    batch_size_files: int = 100
    batch_size_db: int = 500
    max_execution_time: float = 25.0
    memory_limit: int = 0  # bytes, 0 = unlimited
    page_size: int = 500
    max_file_bytes: int = 5 * 1024 * 1024
    max_cell_bytes: int = 1024 * 1024
    max_matches_per_cell: int = 20
    max_matches_per_file: int = 1000
    max_results_per_batch: int = 1000
    preview_width: int = 200
    retention_seconds: int = 3600


@dataclass
class ServerConfig:
    """HTTP API settings."""

    host: str = "127.0.0.1"
    port: int = 8430
    api_token: str | None = None


@dataclass
class StringscopeConfig:
    """Complete Stringscope configuration."""

    corpus: CorpusConfig = field(default_factory=CorpusConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    base_dir: Path | None = None

    @property
    def corpus_root(self) -> Path:
        return self.corpus.resolved_root(self.base_dir)

    @property
    def database_path(self) -> Path | None:
        return self.corpus.resolved_database(self.base_dir)

    @property
    def state_dir(self) -> Path:
        return get_state_dir(self.base_dir)

    @classmethod
    def load(cls, base_dir: Path) -> "StringscopeConfig":
        """Load configuration from a directory containing stringscope.yml."""
        config = cls(base_dir=base_dir.resolve())

        config_path = base_dir / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            config = cls._parse(data, base_dir=base_dir.resolve())

        env_token = os.environ.get("STRINGSCOPE_API_TOKEN")
        if env_token:
            config.server.api_token = env_token
        return config

    @classmethod
    def _parse(cls, data: dict[str, Any], base_dir: Path) -> "StringscopeConfig":
        config = cls(base_dir=base_dir)

        corpus_data = data.get("corpus", {}) or {}
        groups = corpus_data.get("groups", {}) or {}
        config.corpus = CorpusConfig(
            root=str(corpus_data.get("root", ".")),
            content_dir=str(corpus_data.get("content_dir", "content")),
            groups={str(name): str(path) for name, path in groups.items()} if isinstance(groups, dict) else {},
            database=corpus_data.get("database"),
        )

        search_data = data.get("search", {}) or {}
        defaults = SearchConfig()
        config.search = SearchConfig(
            batch_size_files=int(search_data.get("batch_size_files", defaults.batch_size_files)),
            batch_size_db=int(search_data.get("batch_size_db", defaults.batch_size_db)),
            max_execution_time=float(search_data.get("max_execution_time", defaults.max_execution_time)),
            memory_limit=parse_size(search_data.get("memory_limit", defaults.memory_limit)),
            page_size=int(search_data.get("page_size", defaults.page_size)),
            max_file_bytes=parse_size(search_data.get("max_file_bytes", defaults.max_file_bytes)),
            max_cell_bytes=parse_size(search_data.get("max_cell_bytes", defaults.max_cell_bytes)),
            max_matches_per_cell=int(search_data.get("max_matches_per_cell", defaults.max_matches_per_cell)),
            max_matches_per_file=int(search_data.get("max_matches_per_file", defaults.max_matches_per_file)),
            max_results_per_batch=int(search_data.get("max_results_per_batch", defaults.max_results_per_batch)),
            preview_width=int(search_data.get("preview_width", defaults.preview_width)),
            retention_seconds=int(search_data.get("retention_seconds", defaults.retention_seconds)),
        )

        server_data = data.get("server", {}) or {}
        config.server = ServerConfig(
            host=server_data.get("host", "127.0.0.1"),
            port=int(server_data.get("port", 8430)),
            api_token=server_data.get("api_token"),
        )
        return config


def get_base_dir() -> Path:
    """Find the nearest directory holding stringscope.yml, else the cwd."""

    current = Path.cwd()
    while current != current.parent:
        if (current / CONFIG_FILENAME).exists():
            return current
        current = current.parent
    return Path.cwd()


def get_state_dir(base_dir: Path | None = None) -> Path:
    """Get the .stringscope directory path."""

    if base_dir is None:
        base_dir = get_base_dir()
    return base_dir / STATE_DIRNAME


def ensure_state_dir(base_dir: Path | None = None) -> Path:
    """Ensure .stringscope directory exists and return its path."""

    state_dir = get_state_dir(base_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir
