"""
NotePad Store - note and tag storage with background bulk operations.
This package implements the persistence and query layer of a note-taking
application: a Note/Tag entity model kept in SQLite, predicate-based search,
and a task coordinator that runs bulk work on isolated handles and merges the
results back into a single primary view.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notepad-store")
except PackageNotFoundError:
    __version__ = "0.1.0"
