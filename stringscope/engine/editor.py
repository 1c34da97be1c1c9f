"""
Edit-back helpers: open a reported location and write a corrected value.
"""

from __future__ import annotations

import logging
import os
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import EditError
from .tables import PK_INT, TableEnumerator, quote_identifier
from .walker import decode_structured

logger = logging.getLogger(__name__)

LANGUAGES = {
    ".php": "php",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".css": "css",
    ".scss": "scss",
    ".sass": "sass",
    ".less": "less",
    ".html": "html",
    ".htm": "html",
    ".json": "json",
    ".xml": "xml",
    ".sql": "sql",
    ".md": "markdown",
    ".txt": "plaintext",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".py": "python",
}
DEFAULT_LANGUAGE = "plaintext"
MAX_EDIT_BYTES = 5 * 1024 * 1024


def language_for(path: Path) -> str:
    return LANGUAGES.get(path.suffix.lower(), DEFAULT_LANGUAGE)


class FileEditor:
    """Reads and rewrites files under the corpus root, keeping backups."""

    def __init__(self, root: Path, backup_dir: Path, max_bytes: int = MAX_EDIT_BYTES):
        self.root = root.resolve()
        self.backup_dir = backup_dir
        self.max_bytes = max_bytes

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        candidate = candidate.resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise EditError(f"Path is outside the corpus root: {path}") from exc
        return candidate

    def read(self, path: str | Path) -> dict[str, Any]:
        target = self._resolve(path)
        if not target.is_file():
            raise EditError(f"File not found: {path}")
        if target.stat().st_size > self.max_bytes:
            raise EditError(f"File too large to edit: {path}")
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise EditError(f"Cannot read {path}: {exc}") from exc
        return {
            "path": str(target),
            "relative_path": str(target.relative_to(self.root)),
            "content": content,
            "language": language_for(target),
            "writable": os.access(target, os.W_OK),
            "size": target.stat().st_size,
        }

    def backup(self, target: Path) -> Path:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        relative = target.relative_to(self.root)
        backup_path = self.backup_dir / relative.parent / f"{relative.name}.{stamp}.bak"
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(target, backup_path)
        return backup_path

    def save(self, path: str | Path, content: str) -> dict[str, Any]:
        """Write ``content`` after copying the current file to the backup dir."""
        target = self._resolve(path)
        if not target.is_file():
            raise EditError(f"File not found: {path}")
        if not os.access(target, os.W_OK):
            raise EditError(f"File is not writable: {path}")
        try:
            backup_path = self.backup(target)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise EditError(f"Cannot write {path}: {exc}") from exc
        logger.info("Saved %s (backup %s)", target, backup_path)
        return {"path": str(target), "backup": str(backup_path), "size": target.stat().st_size}


class RowEditor:
    """Reads and updates a single cell, addressed by primary key."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.enumerator = TableEnumerator(conn)

    def _locate(self, table: str, column: str, primary_value: Any) -> tuple[str, Any]:
        if table not in self.enumerator.table_names():
            raise EditError(f"Unknown table: {table}")
        descriptor = self.enumerator.describe_table(table)
        if descriptor is None:
            raise EditError(f"Table {table} has no single primary key or no text columns")
        if column not in descriptor.columns:
            raise EditError(f"Column {column} is not a searchable column of {table}")
        if descriptor.primary_type == PK_INT:
            try:
                primary_value = int(primary_value)
            except (TypeError, ValueError) as exc:
                raise EditError(f"Primary key {descriptor.primary_key} must be an integer") from exc
        return descriptor.primary_key, primary_value

    def get_value(self, table: str, column: str, primary_value: Any) -> dict[str, Any]:
        primary_key, key_value = self._locate(table, column, primary_value)
        row = self.conn.execute(
            f"SELECT {quote_identifier(column)} FROM {quote_identifier(table)} "
            f"WHERE {quote_identifier(primary_key)} = ?",
            (key_value,),
        ).fetchone()
        if row is None:
            raise EditError(f"No row in {table} with {primary_key} = {key_value}")
        value = row[0]
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return {
            "table": table,
            "column": column,
            "primary_key": primary_key,
            "primary_value": key_value,
            "value": value,
            "is_structured": isinstance(value, str) and decode_structured(value) is not None,
        }

    def update_value(self, table: str, column: str, primary_value: Any, value: str) -> dict[str, Any]:
        primary_key, key_value = self._locate(table, column, primary_value)
        try:
            cursor = self.conn.execute(
                f"UPDATE {quote_identifier(table)} SET {quote_identifier(column)} = ? "
                f"WHERE {quote_identifier(primary_key)} = ?",
                (value, key_value),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise EditError(f"Update of {table}.{column} failed: {exc}") from exc
        if cursor.rowcount == 0:
            raise EditError(f"No row in {table} with {primary_key} = {key_value}")
        logger.info("Updated %s.%s where %s = %s", table, column, primary_key, key_value)
        return {"table": table, "column": column, "primary_key": primary_key, "primary_value": key_value, "updated": True}
