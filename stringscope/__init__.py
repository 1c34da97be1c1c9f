"""
Stringscope - Resumable string search across file trees and databases.

A tool that:
1. Enumerates a corpus (a directory tree or a SQLite database) once
2. Scans it in short, budget-bounded batches that resume where they stopped
3. Accumulates highlighted match previews in a time-boxed session store
4. Lets you jump back to any match and edit it in place

Usage:
    stringscope init              # Write stringscope.yml in the current directory
    stringscope locations         # List searchable directory scopes
    stringscope files TERM        # Search files batch by batch
    stringscope db TERM           # Search database tables batch by batch
    stringscope serve             # Start the HTTP API
"""

__version__ = "0.1.0"
__author__ = "Stringscope"
