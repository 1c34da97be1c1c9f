"""
Search session lifecycle shared by the file and database engines.

A session is created once by ``init`` and then advanced by repeated
``process_batch`` calls, each bounded by a fresh ResourceGovernor:

    running -> completed
    running -> cancelled
    (unknown or expired id) -> error

Every batch commits its cursor, counters, status and result chunk in one
version-checked write. Duplicate batches for one id are serialized by a
per-session lock inside this process and by the version check across
processes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from ..config import SearchConfig
from ..errors import BatchConflict, SessionNotFound
from ..store import MatchRecord, SearchSession, Store
from .budget import ResourceGovernor
from .matching import Matcher

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_ERROR = "error"
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_CANCELLED}

CANCEL_ATTEMPTS = 5


def progress_percent(processed: int, total: int) -> float:
    if total <= 0:
        return 0
    return round(processed / total * 100, 1)


@dataclass
class BatchResult:
    """Response of one ``process_batch`` call."""

    search_id: str
    kind: str
    status: str
    total: int
    processed: int
    progress: float
    current: str | None = None
    results: list[MatchRecord] = field(default_factory=list)
    truncated: bool = False
    skipped_tables: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "search_id": self.search_id,
            "kind": self.kind,
            "status": self.status,
            "total": self.total,
            "processed": self.processed,
            "progress": self.progress,
            "current": self.current,
            "truncated": self.truncated,
            "skipped_tables": list(self.skipped_tables),
            "batch_results": [record.to_dict() for record in self.results],
            "batch_count": len(self.results),
        }


def session_summary(session: SearchSession) -> dict[str, Any]:
    """Public view of a session (no unit lists, no table internals)."""
    return {
        "search_id": session.id,
        "kind": session.kind,
        "search_string": session.search_term,
        "mode": session.mode,
        "scope": session.scope,
        "tables": [table.name for table in session.tables],
        "skipped_tables": list(session.skipped_tables),
        "status": session.status,
        "total": session.total,
        "processed": session.processed,
        "progress": progress_percent(session.processed, session.total),
        "truncated": session.truncated,
        "created_at": session.created_at,
    }


class SearchEngine:
    """Base class: subclasses implement ``init`` and ``_run_batch``."""

    kind = ""

    def __init__(
        self,
        store: Store,
        config: SearchConfig,
        governor_factory: Callable[[], ResourceGovernor] | None = None,
    ):
        self.store = store
        self.config = config
        self._governor_factory = governor_factory or self._default_governor
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _default_governor(self) -> ResourceGovernor:
        return ResourceGovernor(
            time_budget=self.config.max_execution_time,
            memory_limit=self.config.memory_limit,
        )

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(session_id, threading.Lock())

    def _new_session(self, term: str, mode: str, **values: Any) -> SearchSession:
        now = datetime.now(timezone.utc).isoformat()
        return SearchSession(
            id=str(uuid4()),
            kind=self.kind,
            search_term=term,
            mode=mode,
            status=STATUS_RUNNING,
            created_at=now,
            updated_at=now,
            **values,
        )

    def _load(self, session_id: str) -> SearchSession:
        session = self.store.get_session(self.kind, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _matcher(self, session: SearchSession) -> Matcher:
        return Matcher(session.search_term, session.mode, preview_width=self.config.preview_width)

    def _current_label(self, session: SearchSession) -> str | None:
        if session.status == STATUS_COMPLETED:
            return "completed"
        return None

    def _result(self, session: SearchSession, records: list[MatchRecord]) -> BatchResult:
        return BatchResult(
            search_id=session.id,
            kind=self.kind,
            status=session.status,
            total=session.total,
            processed=session.processed,
            progress=progress_percent(session.processed, session.total),
            current=self._current_label(session),
            results=records,
            truncated=session.truncated,
            skipped_tables=list(session.skipped_tables),
        )

    def _run_batch(
        self,
        session: SearchSession,
        governor: ResourceGovernor,
        matcher: Matcher,
    ) -> list[MatchRecord]:
        raise NotImplementedError

    def _release_lock(self, session_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(session_id, None)

    def _purge_expired(self) -> None:
        """Drop expired store entries and the locks no batch is holding."""
        self.store.purge_expired()
        with self._locks_guard:
            for session_id in [sid for sid, lock in self._locks.items() if not lock.locked()]:
                del self._locks[session_id]

    def process_batch(self, session_id: str) -> BatchResult:
        """Advance a session by one bounded batch."""
        with self._session_lock(session_id):
            try:
                result = self._process_locked(session_id)
            except SessionNotFound:
                self._release_lock(session_id)
                raise
        if result.status in TERMINAL_STATUSES:
            self._release_lock(session_id)
        return result

    def _process_locked(self, session_id: str) -> BatchResult:
        session = self._load(session_id)
        if session.status in TERMINAL_STATUSES:
            return self._result(session, [])

        start = (session.cursor, session.row_offset, session.processed)
        governor = self._governor_factory()
        records = self._run_batch(session, governor, self._matcher(session))

        if not self.store.commit_session(session, records):
            self._commit_after_cancel(session, records, start)

        logger.debug(
            "%s batch %s: %d/%d processed, %d matches, status=%s, %.2fs",
            self.kind,
            session_id,
            session.processed,
            session.total,
            len(records),
            session.status,
            governor.elapsed,
        )
        return self._result(session, records)

    def _commit_after_cancel(
        self,
        session: SearchSession,
        records: list[MatchRecord],
        start: tuple[int, int, int],
    ) -> None:
        """
        Retry a lost commit when the only concurrent change was a cancel.

        The batch's progress is kept and the session stays cancelled. Any other
        concurrent change means a duplicate batch already advanced the cursor.
        """
        latest = self.store.get_session(self.kind, session.id)
        if latest is None:
            raise SessionNotFound(session.id)
        unchanged = (latest.cursor, latest.row_offset, latest.processed) == start
        if latest.status != STATUS_CANCELLED or not unchanged:
            raise BatchConflict(session.id)
        session.version = latest.version
        session.result_chunks = latest.result_chunks
        session.status = STATUS_CANCELLED
        if not self.store.commit_session(session, records):
            raise BatchConflict(session.id)

    def cancel(self, session_id: str) -> dict[str, str]:
        """Best-effort, idempotent cancellation."""
        for _ in range(CANCEL_ATTEMPTS):
            session = self.store.get_session(self.kind, session_id)
            if session is None or session.status in TERMINAL_STATUSES:
                break
            session.status = STATUS_CANCELLED
            if self.store.commit_session(session):
                logger.info("%s search %s cancelled at %d/%d", self.kind, session_id, session.processed, session.total)
                break
        return {"search_id": session_id, "status": STATUS_CANCELLED}

    def get_session(self, session_id: str) -> SearchSession:
        return self._load(session_id)

    def get_results(self, session_id: str) -> list[MatchRecord]:
        """All accumulated records in discovery order."""
        return self.store.get_results(self.kind, session_id)

    def cleanup(self, session_id: str) -> None:
        """Remove the session and everything stored for it. Safe to repeat."""
        deleted = self.store.delete_session(self.kind, session_id)
        self._release_lock(session_id)
        if deleted:
            logger.debug("%s search %s cleaned up (%d keys)", self.kind, session_id, deleted)
