"""
Error taxonomy shared by the search engines, the store and the HTTP layer.
"""

from __future__ import annotations


class StringscopeError(RuntimeError):
    """Base class for errors reported back to the caller."""


class InvalidPattern(StringscopeError, ValueError):
    """Raised at session creation when the search term cannot be used."""


class SessionNotFound(StringscopeError, LookupError):
    """Raised when a session id is unknown or its retention window expired."""

    def __init__(self, session_id: str):
        super().__init__(f"Search session not found: {session_id}")
        self.session_id = session_id


class StoreFailure(StringscopeError):
    """Raised when the session store rejects a read or write."""


class BatchConflict(StringscopeError):
    """Raised when a concurrent batch for the same session committed first."""

    def __init__(self, session_id: str):
        super().__init__(f"Another batch already advanced session {session_id}")
        self.session_id = session_id


class UnscannableUnit(StringscopeError):
    """A file or cell that cannot be scanned. Always recovered locally."""


class EditError(StringscopeError):
    """Raised by the edit-back helpers when a location cannot be read or written."""


class CorpusUnavailable(StringscopeError):
    """Raised when the configured corpus root or database cannot be opened."""
