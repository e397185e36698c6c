"""Storage layer for the NotePad store."""

from notepad_store.storage.note_repository import NoteRepository
from notepad_store.storage.store import Handle, Store
from notepad_store.storage.tag_repository import TagRepository

__all__ = [
    "Store",
    "Handle",
    "NoteRepository",
    "TagRepository",
]
