"""
Resumable search engines for file trees and SQLite databases.
"""

from .files import FileSearch
from .session import BatchResult, SearchEngine
from .tables import DatabaseSearch

__all__ = ["BatchResult", "DatabaseSearch", "FileSearch", "SearchEngine"]
