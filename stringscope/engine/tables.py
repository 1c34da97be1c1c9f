"""
Database search over a SQLite corpus.

Each table with a single primary key and at least one text-bearing column is
scanned page by page in primary-key order. The session cursor is the table
index and ``row_offset`` the position inside that table.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from ..config import StringscopeConfig
from ..errors import CorpusUnavailable, UnscannableUnit
from ..store import MatchRecord, SearchSession, Store, TableDescriptor
from .budget import ResourceGovernor
from .matching import MODE_LITERAL, Matcher, validate_pattern
from .session import STATUS_COMPLETED, SearchEngine
from .walker import search_value

logger = logging.getLogger(__name__)

TEXT_TYPE_MARKERS = ("char", "text", "clob", "blob", "json")
PK_INT = "int"
PK_STRING = "string"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def is_text_type(declared: str) -> bool:
    lowered = (declared or "").lower()
    return any(marker in lowered for marker in TEXT_TYPE_MARKERS)


def open_corpus_database(path: Path | None, readonly: bool = True) -> sqlite3.Connection:
    """Open the corpus database; read-only unless an edit needs to write."""
    if path is None:
        raise CorpusUnavailable("No corpus database configured (corpus.database)")
    if not path.exists():
        raise CorpusUnavailable(f"Corpus database not found: {path}")
    mode = "ro" if readonly else "rw"
    try:
        conn = sqlite3.connect(f"{path.as_uri()}?mode={mode}", uri=True, timeout=10, check_same_thread=False)
    except sqlite3.Error as exc:
        raise CorpusUnavailable(f"Cannot open corpus database {path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    return conn


@dataclass
class TableListing:
    tables: list[TableDescriptor] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    truncated: bool = False


class TableEnumerator:
    """Inspects corpus table metadata."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def table_names(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall()
        return [row[0] for row in rows]

    def count_rows(self, table: str) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}").fetchone()
        return int(row[0])

    def describe_table(self, table: str) -> TableDescriptor | None:
        """Scan plan for ``table``, or None when it cannot be scanned."""
        columns = self.conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
        if not columns:
            return None

        keys = [col for col in columns if col[5]]
        if len(keys) != 1:
            return None
        key = keys[0]
        text_columns = [col[1] for col in columns if col[1] != key[1] and is_text_type(col[2])]
        if not text_columns:
            return None

        return TableDescriptor(
            name=table,
            primary_key=key[1],
            primary_type=PK_INT if "int" in (key[2] or "").lower() else PK_STRING,
            columns=text_columns,
        )

    def describe(self, table: str) -> TableDescriptor | None:
        descriptor = self.describe_table(table)
        if descriptor is not None:
            descriptor.row_count = self.count_rows(table)
        return descriptor

    def enumerate(self, tables_filter: list[str] | None, governor: ResourceGovernor) -> TableListing:
        names = self.table_names()
        if tables_filter:
            known = set(names)
            unknown = [name for name in tables_filter if name not in known]
            if unknown:
                logger.warning("Ignoring unknown tables: %s", ", ".join(unknown))
            wanted = set(tables_filter)
            names = [name for name in names if name in wanted]

        listing = TableListing()
        for index, name in enumerate(names):
            if index and governor.should_yield():
                listing.truncated = True
                logger.warning("Table listing truncated after %d tables (resource budget)", index)
                break
            descriptor = self.describe(name)
            if descriptor is None:
                logger.info("Skipping table %s: no single primary key or no text columns", name)
                listing.skipped.append(name)
                continue
            listing.tables.append(descriptor)
        return listing

    def list_tables(self) -> list[dict[str, Any]]:
        return [{"name": name, "rows": self.count_rows(name)} for name in self.table_names()]


def fetch_rows(
    conn: sqlite3.Connection,
    table: TableDescriptor,
    offset: int,
    limit: int,
) -> list[sqlite3.Row]:
    selected = ", ".join(quote_identifier(c) for c in [table.primary_key, *table.columns])
    sql = (
        f"SELECT {selected} FROM {quote_identifier(table.name)} "
        f"ORDER BY {quote_identifier(table.primary_key)} LIMIT ? OFFSET ?"
    )
    return conn.execute(sql, (limit, offset)).fetchall()


def cell_text(value: Any, max_cell_bytes: int) -> str | None:
    """Text of one cell, or UnscannableUnit when it is over the size cap."""
    if value is None:
        return None
    size = len(value) if isinstance(value, (bytes, str)) else 0
    if max_cell_bytes and size > max_cell_bytes:
        raise UnscannableUnit(f"cell of {size} bytes exceeds {max_cell_bytes}")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def scan_row(
    table: TableDescriptor,
    row: sqlite3.Row,
    matcher: Matcher,
    max_cell_bytes: int,
    max_matches_per_cell: int,
) -> list[MatchRecord]:
    records: list[MatchRecord] = []
    key_value = row[0]
    for index, column in enumerate(table.columns, start=1):
        try:
            text = cell_text(row[index], max_cell_bytes)
        except UnscannableUnit as exc:
            logger.debug("Skipping %s.%s (%s=%s): %s", table.name, column, table.primary_key, key_value, exc)
            continue
        if not text:
            continue
        for found in search_value(text, matcher, limit=max_matches_per_cell):
            records.append(
                MatchRecord(
                    kind="database",
                    table=table.name,
                    column=column,
                    primary_key=table.primary_key,
                    primary_value=key_value,
                    primary_type=table.primary_type,
                    preview=found.preview,
                    from_structured_value=found.structured,
                    structure_path=found.path,
                )
            )
    return records


class DatabaseSearch(SearchEngine):
    """Resumable search over the tables of a SQLite corpus."""

    kind = "database"

    def __init__(
        self,
        store: Store,
        config: StringscopeConfig,
        governor_factory: Callable[[], ResourceGovernor] | None = None,
        connect: Callable[[], sqlite3.Connection] | None = None,
    ):
        super().__init__(store, config.search, governor_factory)
        self.database_path = config.database_path
        self._connect = connect or (lambda: open_corpus_database(self.database_path))

    def list_tables(self) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            return TableEnumerator(conn).list_tables()
        finally:
            conn.close()

    def init(self, term: str, mode: str = MODE_LITERAL, tables: list[str] | None = None) -> SearchSession:
        validate_pattern(term, mode)
        self._purge_expired()

        conn = self._connect()
        try:
            listing = TableEnumerator(conn).enumerate(tables, self._governor_factory())
        finally:
            conn.close()

        session = self._new_session(term, mode, tables_filter=list(tables or []))
        session.tables = listing.tables
        session.skipped_tables = listing.skipped
        session.truncated = listing.truncated
        session.total = sum(t.row_count for t in listing.tables)
        if not session.tables:
            session.status = STATUS_COMPLETED
        self.store.create_session(session, ttl=self.config.retention_seconds)
        logger.info(
            "database search %s started: tables=%d rows=%d skipped=%d",
            session.id,
            len(session.tables),
            session.total,
            len(session.skipped_tables),
        )
        return session

    def _current_label(self, session: SearchSession) -> str | None:
        if session.status == STATUS_COMPLETED or session.cursor >= len(session.tables):
            return "completed"
        return session.tables[session.cursor].name

    def _run_batch(
        self,
        session: SearchSession,
        governor: ResourceGovernor,
        matcher: Matcher,
    ) -> list[MatchRecord]:
        records: list[MatchRecord] = []
        inspected = 0
        stop = False

        conn = self._connect()
        try:
            while not stop and session.cursor < len(session.tables) and inspected < self.config.batch_size_db:
                if inspected and governor.should_yield():
                    break
                table = session.tables[session.cursor]
                limit = self.config.batch_size_db - inspected
                try:
                    rows = fetch_rows(conn, table, session.row_offset, limit)
                except sqlite3.Error as exc:
                    logger.error("Query on table %s failed, skipping it: %s", table.name, exc)
                    session.skipped_tables.append(table.name)
                    session.cursor += 1
                    session.row_offset = 0
                    continue

                consumed = 0
                for row in rows:
                    if inspected and (
                        len(records) >= self.config.max_results_per_batch or governor.should_yield()
                    ):
                        stop = True
                        break
                    records.extend(
                        scan_row(
                            table,
                            row,
                            matcher,
                            self.config.max_cell_bytes,
                            self.config.max_matches_per_cell,
                        )
                    )
                    consumed += 1
                    inspected += 1

                session.row_offset += consumed
                session.processed += consumed
                if not stop and len(rows) < limit:
                    session.cursor += 1
                    session.row_offset = 0
        finally:
            conn.close()

        session.total = max(session.total, session.processed)
        if session.cursor >= len(session.tables):
            session.status = STATUS_COMPLETED
        return records
