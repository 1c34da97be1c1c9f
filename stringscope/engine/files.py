"""
File-tree search: scope resolution, enumeration and per-file scanning.

Scope selectors:
    root             the whole corpus root
    content          the configured content directory
    <group>:*        every entry of a configured group directory
    <group>:<name>   one entry of a group (e.g. ``plugins:forms``)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..config import STATE_DIRNAME, CorpusConfig, StringscopeConfig
from ..errors import UnscannableUnit
from ..store import MatchRecord, SearchSession, Store
from .budget import ResourceGovernor
from .matching import MODE_LITERAL, Matcher, validate_pattern
from .session import STATUS_COMPLETED, SearchEngine

logger = logging.getLogger(__name__)

SCOPE_ROOT = "root"
SCOPE_CONTENT = "content"
ALL_MEMBERS = "*"

# Never scanned: media, archives, documents, fonts, native binaries, source maps
SKIP_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".mkv", ".webm", ".wav",
    ".zip", ".rar", ".7z", ".tar", ".gz", ".bz2", ".xz",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".ttf", ".woff", ".woff2", ".eot", ".otf",
    ".exe", ".dll", ".so", ".dylib", ".bin", ".wasm",
    ".pyc", ".class", ".o",
    ".map",
}
SKIP_SUFFIXES = (".min.js", ".min.css", ".js.map", ".css.map")
SKIP_DIRS = {"vendor", "node_modules", ".git", ".svn", ".hg", "__pycache__", STATE_DIRNAME}

BINARY_SNIFF_BYTES = 8192


@dataclass
class FileListing:
    root: Path | None
    files: list[str] = field(default_factory=list)
    truncated: bool = False


def should_skip_file(path: Path) -> bool:
    name = path.name.lower()
    if name.endswith(SKIP_SUFFIXES):
        return True
    return path.suffix.lower() in SKIP_EXTENSIONS


def looks_binary(path: Path) -> bool:
    with open(path, "rb") as handle:
        return b"\0" in handle.read(BINARY_SNIFF_BYTES)


class FileEnumerator:
    """Resolves scope selectors and lists scannable files in stable order."""

    def __init__(self, corpus: CorpusConfig, base_dir: Path | None = None):
        self.corpus = corpus
        self.root = corpus.resolved_root(base_dir)

    def _group_dir(self, group: str) -> Path | None:
        relative = self.corpus.groups.get(group)
        if relative is None:
            return None
        return (self.root / relative).resolve()

    def resolve_scope(self, scope: str) -> Path | None:
        if scope == SCOPE_ROOT:
            return self.root
        if scope == SCOPE_CONTENT:
            return (self.root / self.corpus.content_dir).resolve()

        group, sep, member = scope.partition(":")
        if not sep or not member:
            return None
        group_dir = self._group_dir(group)
        if group_dir is None:
            return None
        if member == ALL_MEMBERS:
            return group_dir
        if "/" in member or "\\" in member or member in {".", ".."}:
            return None
        return group_dir / member

    def list_locations(self) -> list[dict[str, str]]:
        """Every selectable scope with a human label."""
        locations = [
            {"scope": SCOPE_ROOT, "label": "Entire corpus", "group": "corpus"},
            {"scope": SCOPE_CONTENT, "label": f"{self.corpus.content_dir} directory", "group": "corpus"},
        ]
        for group in sorted(self.corpus.groups):
            locations.append({"scope": f"{group}:{ALL_MEMBERS}", "label": f"All {group}", "group": group})
            group_dir = self._group_dir(group)
            if group_dir is None or not group_dir.is_dir():
                continue
            for child in sorted(group_dir.iterdir(), key=lambda p: p.name):
                if child.is_dir() and child.name not in SKIP_DIRS:
                    locations.append({"scope": f"{group}:{child.name}", "label": child.name, "group": group})
        return locations

    def enumerate(self, scope: str, governor: ResourceGovernor) -> FileListing:
        """
        Walk the scope depth-first in sorted order.

        Stops early when the governor trips; the partial listing is flagged
        ``truncated`` rather than failing.
        """
        path = self.resolve_scope(scope)
        if path is None or not path.is_dir():
            logger.warning("Search scope %r does not resolve to a directory", scope)
            return FileListing(root=path)

        listing = FileListing(root=path)
        for dirpath, dirnames, filenames in os.walk(path):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for filename in sorted(filenames):
                candidate = Path(dirpath) / filename
                if should_skip_file(candidate):
                    continue
                listing.files.append(str(candidate))
                if governor.should_yield():
                    listing.truncated = True
                    logger.warning(
                        "File listing for %r truncated after %d files (resource budget)",
                        scope,
                        len(listing.files),
                    )
                    return listing
        return listing


def _relative(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


def scan_file(
    path: Path,
    matcher: Matcher,
    root: Path,
    max_bytes: int,
    max_matches: int = 0,
    governor: ResourceGovernor | None = None,
) -> list[MatchRecord]:
    """
    Scan one file line by line. One record per matching line; a matching
    file name comes first with line 0.

    Raises UnscannableUnit for unreadable, oversized and binary files. The
    governor's memory check is consulted after every record so a single
    file full of hits cannot exhaust the process.
    """
    try:
        if not path.is_file():
            raise UnscannableUnit(f"Not a regular file: {path}")
        if path.stat().st_size > max_bytes:
            raise UnscannableUnit(f"File larger than {max_bytes} bytes: {path}")
        if looks_binary(path):
            raise UnscannableUnit(f"Binary file: {path}")
    except OSError as exc:
        raise UnscannableUnit(f"Cannot read {path}: {exc}") from exc

    relative = _relative(path, root)
    records: list[MatchRecord] = []
    if matcher.matches(path.name):
        records.append(
            MatchRecord(
                kind="file",
                path=str(path),
                relative_path=relative,
                line=0,
                position=0,
                preview=matcher.preview(path.name),
            )
        )

    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            for line_number, line in enumerate(handle, start=1):
                found = matcher.search(line)
                if found is None:
                    continue
                records.append(
                    MatchRecord(
                        kind="file",
                        path=str(path),
                        relative_path=relative,
                        line=line_number,
                        position=found.start(),
                        preview=matcher.preview(line, strip_markup=False),
                    )
                )
                if max_matches and len(records) >= max_matches:
                    logger.debug("Match cap %d reached in %s", max_matches, path)
                    break
                if governor is not None and governor.memory_exhausted():
                    logger.warning("Memory limit reached in %s after %d matches; rest of file skipped", path, len(records))
                    break
    except OSError as exc:
        raise UnscannableUnit(f"Read failed for {path}: {exc}") from exc
    return records


class FileSearch(SearchEngine):
    """Resumable search over a directory tree."""

    kind = "file"

    def __init__(
        self,
        store: Store,
        config: StringscopeConfig,
        governor_factory: Callable[[], ResourceGovernor] | None = None,
    ):
        super().__init__(store, config.search, governor_factory)
        self.enumerator = FileEnumerator(config.corpus, config.base_dir)
        self.root = self.enumerator.root

    def locations(self) -> list[dict[str, str]]:
        return self.enumerator.list_locations()

    def init(self, scope: str, term: str, mode: str = MODE_LITERAL) -> SearchSession:
        """Validate, enumerate once, persist the new running session."""
        validate_pattern(term, mode)
        self._purge_expired()

        listing = self.enumerator.enumerate(scope, self._governor_factory())
        session = self._new_session(term, mode, scope=scope, page_size=self.config.page_size)
        session.total = len(listing.files)
        session.truncated = listing.truncated
        session.unit_pages = self.store.save_unit_pages(
            self.kind,
            session.id,
            listing.files,
            page_size=session.page_size,
            ttl=self.config.retention_seconds,
        )
        if session.total == 0:
            session.status = STATUS_COMPLETED
        self.store.create_session(session, ttl=self.config.retention_seconds)
        logger.info("file search %s started: scope=%s files=%d truncated=%s", session.id, scope, session.total, session.truncated)
        return session

    def _run_batch(
        self,
        session: SearchSession,
        governor: ResourceGovernor,
        matcher: Matcher,
    ) -> list[MatchRecord]:
        records: list[MatchRecord] = []
        page_index = -1
        page: list[str] = []
        scanned = 0

        while session.cursor < session.total and scanned < self.config.batch_size_files:
            if scanned and governor.should_yield():
                break

            wanted = session.cursor // session.page_size
            if wanted != page_index:
                stored = self.store.get_unit_page(self.kind, session.id, wanted)
                if stored is None:
                    logger.warning("file search %s lost unit page %d; finishing early", session.id, wanted)
                    session.total = session.processed
                    break
                page, page_index = stored, wanted

            local = session.cursor % session.page_size
            if local < len(page):
                try:
                    records.extend(
                        scan_file(
                            Path(page[local]),
                            matcher,
                            self.root,
                            max_bytes=self.config.max_file_bytes,
                            max_matches=self.config.max_matches_per_file,
                            governor=governor,
                        )
                    )
                except UnscannableUnit as exc:
                    logger.debug("Skipping %s", exc)
            session.cursor += 1
            session.processed += 1
            scanned += 1

        if session.cursor >= session.total:
            session.status = STATUS_COMPLETED
        return records
