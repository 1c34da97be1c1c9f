"""
SQLite key-value storage for Stringscope search sessions.

Every value is JSON with a per-key expiry and a version counter.

Key layout:
- {kind}:session:{id}             Search session record
- {kind}:units:{id}:{page}        Page of scan units (file paths)
- {kind}:results:{id}:{chunk}     Chunk of match records appended by one batch
"""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator

from .config import get_state_dir
from .errors import StoreFailure


DB_FILENAME = "stringscope.db"
CURRENT_SCHEMA_VERSION = 1
DEFAULT_TTL_SECONDS = 3600

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

-- Time-boxed key-value entries
CREATE TABLE IF NOT EXISTS kv_entries (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    expires_at REAL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv_entries(expires_at);
"""


@dataclass(frozen=True)
class MatchRecord:
    """One reported occurrence of the search term."""

    kind: str  # file | database
    preview: str
    path: str | None = None
    relative_path: str | None = None
    line: int | None = None
    position: int | None = None
    table: str | None = None
    column: str | None = None
    primary_key: str | None = None
    primary_value: Any = None
    primary_type: str | None = None
    from_structured_value: bool = False
    structure_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TableDescriptor:
    """Scan plan for one table."""

    name: str
    primary_key: str
    primary_type: str  # int | string
    columns: list[str] = field(default_factory=list)
    row_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TableDescriptor":
        return cls(
            name=data["name"],
            primary_key=data["primary_key"],
            primary_type=data.get("primary_type", "string"),
            columns=list(data.get("columns", [])),
            row_count=int(data.get("row_count", 0)),
        )


@dataclass
class SearchSession:
    """Stored search session."""

    id: str
    kind: str  # file | database
    search_term: str
    mode: str  # literal | regex
    status: str
    created_at: str
    updated_at: str
    scope: str | None = None
    tables_filter: list[str] = field(default_factory=list)
    total: int = 0
    processed: int = 0
    cursor: int = 0
    row_offset: int = 0
    page_size: int = 500
    unit_pages: int = 0
    result_chunks: int = 0
    tables: list[TableDescriptor] = field(default_factory=list)
    skipped_tables: list[str] = field(default_factory=list)
    truncated: bool = False
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("version", None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> "SearchSession":
        known = {f.name for f in fields(cls)}
        payload = {k: v for k, v in data.items() if k in known and k != "version"}
        payload["tables"] = [TableDescriptor.from_dict(t) for t in data.get("tables", [])]
        return cls(version=version, **payload)


@dataclass
class StoredEntry:
    """A raw key-value row."""

    key: str
    value: Any
    version: int
    expires_at: float | None


def session_key(kind: str, session_id: str) -> str:
    return f"{kind}:session:{session_id}"


def units_key(kind: str, session_id: str, page: int) -> str:
    return f"{kind}:units:{session_id}:{page:06d}"


def results_key(kind: str, session_id: str, chunk: int) -> str:
    return f"{kind}:results:{session_id}:{chunk:06d}"


def _prefix_upper_bound(prefix: str) -> str:
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


class Store:
    """SQLite storage manager for Stringscope sessions and results."""

    def __init__(
        self,
        db_path: Path | None = None,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if db_path is None:
            db_path = get_state_dir() / DB_FILENAME
        self.db_path = db_path
        self.default_ttl = default_ttl
        self._clock = clock
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure database schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
            if self._get_schema_version(conn) < CURRENT_SCHEMA_VERSION:
                self._set_schema_version(conn, CURRENT_SCHEMA_VERSION)

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        value = row[0]
        return int(value) if value is not None else 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection; sqlite errors become StoreFailure."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as exc:
            raise StoreFailure(f"Cannot open session store {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreFailure(f"Session store write failed: {exc}") from exc
        finally:
            conn.close()

    def _now(self) -> str:
        """Get current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    def _expiry(self, ttl: int | None) -> float | None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return None
        return self._clock() + ttl

    def _live(self, expires_at: float | None) -> bool:
        return expires_at is None or expires_at > self._clock()

    @staticmethod
    def _dumps(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False, default=str)

    # =========================================================================
    # Key-value primitives
    # =========================================================================

    def get_entry(self, key: str) -> StoredEntry | None:
        """Get a live entry with its version, or None if missing/expired."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, value_json, version, expires_at FROM kv_entries WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            if not self._live(row["expires_at"]):
                conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
                return None
            return StoredEntry(
                key=row["key"],
                value=json.loads(row["value_json"]),
                version=int(row["version"]),
                expires_at=row["expires_at"],
            )

    def get(self, key: str) -> Any:
        entry = self.get_entry(key)
        return entry.value if entry else None

    def set(self, key: str, value: Any, ttl: int | None = None) -> int:
        """Insert or replace a value. Returns the new version."""
        with self._connect() as conn:
            return self._upsert(conn, key, value, self._expiry(ttl))

    def _upsert(self, conn: sqlite3.Connection, key: str, value: Any, expires_at: float | None) -> int:
        conn.execute(
            """
            INSERT INTO kv_entries (key, value_json, version, expires_at, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value_json = excluded.value_json,
                version = kv_entries.version + 1,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (key, self._dumps(value), expires_at, self._now()),
        )
        row = conn.execute("SELECT version FROM kv_entries WHERE key = ?", (key,)).fetchone()
        return int(row["version"])

    def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """
        Replace ``key`` only if its version is still ``expected_version``.

        The key keeps its original expiry; ``extra`` entries are written with
        that same expiry in the same transaction, so a lost race leaves no
        trace of them either.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE kv_entries
                SET value_json = ?, version = version + 1, updated_at = ?
                WHERE key = ? AND version = ? AND (expires_at IS NULL OR expires_at > ?)
                """,
                (self._dumps(value), self._now(), key, expected_version, self._clock()),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            if extra:
                row = conn.execute("SELECT expires_at FROM kv_entries WHERE key = ?", (key,)).fetchone()
                for extra_key, extra_value in extra.items():
                    self._upsert(conn, extra_key, extra_value, row["expires_at"])
            return True

    def delete(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``. Returns count deleted."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM kv_entries WHERE key >= ? AND key < ?",
                (prefix, _prefix_upper_bound(prefix)),
            )
            return cursor.rowcount

    def scan_prefix(self, prefix: str) -> list[tuple[str, Any]]:
        """Return live (key, value) pairs under ``prefix`` in key order."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT key, value_json FROM kv_entries
                WHERE key >= ? AND key < ? AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key
                """,
                (prefix, _prefix_upper_bound(prefix), self._clock()),
            ).fetchall()
            return [(row["key"], json.loads(row["value_json"])) for row in rows]

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns count deleted."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            return cursor.rowcount

    # =========================================================================
    # Search sessions
    # =========================================================================

    def create_session(self, session: SearchSession, ttl: int | None = None) -> SearchSession:
        """Persist a new session record."""
        session.version = self.set(session_key(session.kind, session.id), session.to_dict(), ttl)
        return session

    def get_session(self, kind: str, session_id: str) -> SearchSession | None:
        entry = self.get_entry(session_key(kind, session_id))
        if entry is None:
            return None
        return SearchSession.from_dict(entry.value, version=entry.version)

    def commit_session(
        self,
        session: SearchSession,
        records: list[MatchRecord] | None = None,
    ) -> bool:
        """
        Version-checked session update plus an optional new result chunk.

        On success ``session.version`` is bumped. The chunk index is taken from
        ``session.result_chunks`` before it is incremented.
        """
        extra: dict[str, Any] = {}
        expected = session.version
        if records:
            extra[results_key(session.kind, session.id, session.result_chunks)] = [r.to_dict() for r in records]
            session.result_chunks += 1
        session.updated_at = self._now()
        committed = self.compare_and_set(
            session_key(session.kind, session.id),
            session.to_dict(),
            expected_version=expected,
            extra=extra,
        )
        if committed:
            session.version = expected + 1
        elif records:
            session.result_chunks -= 1
        return committed

    def save_unit_pages(self, kind: str, session_id: str, units: list[str], page_size: int, ttl: int | None = None) -> int:
        """Store scan units in fixed-size pages. Returns the page count."""
        pages = [units[i:i + page_size] for i in range(0, len(units), page_size)]
        expires_at = self._expiry(ttl)
        with self._connect() as conn:
            for index, page in enumerate(pages):
                self._upsert(conn, units_key(kind, session_id, index), page, expires_at)
        return len(pages)

    def get_unit_page(self, kind: str, session_id: str, page: int) -> list[str] | None:
        return self.get(units_key(kind, session_id, page))

    def get_results(self, kind: str, session_id: str) -> list[MatchRecord]:
        """All result chunks concatenated in chunk order."""
        records: list[MatchRecord] = []
        for _, chunk in self.scan_prefix(f"{kind}:results:{session_id}:"):
            records.extend(MatchRecord.from_dict(item) for item in chunk)
        return records

    def delete_session(self, kind: str, session_id: str) -> int:
        """Delete the session record, its unit pages and result chunks."""
        deleted = 0
        deleted += int(self.delete(session_key(kind, session_id)))
        deleted += self.delete_prefix(f"{kind}:units:{session_id}:")
        deleted += self.delete_prefix(f"{kind}:results:{session_id}:")
        return deleted
