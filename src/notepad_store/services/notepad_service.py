"""Service layer for interactive note and tag operations."""

import datetime
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Union

from notepad_store.config import config
from notepad_store.exceptions import (
    ErrorCode,
    NotePadError,
    NoteNotFoundError,
    ValidationError,
)
from notepad_store.models.schema import Note, Tag, TagColor
from notepad_store.observability import traced
from notepad_store.storage.note_repository import NoteRepository
from notepad_store.storage.store import Store
from notepad_store.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)


def _require_text(value: Optional[str], field: str, code: ErrorCode) -> str:
    if value is None or not value.strip():
        raise ValidationError(
            f"{field.capitalize()} is required", field=field, value=value, code=code
        )
    return value


class NotePadService:
    """Interactive operations on the primary handle.

    Every mutating call commits immediately, so observers see it and
    background handles can read it. Must be used from the interactive
    context that owns ``store.main``.
    """

    def __init__(self, store: Store):
        self.store = store
        self.handle = store.main
        self.notes = NoteRepository(self.handle)
        self.tags = TagRepository(self.handle)

    @contextmanager
    def _committing(self):
        """Commit on success; discard the half-applied change on error."""
        try:
            yield
        except NotePadError:
            self.handle.rollback()
            raise
        self.handle.save()

    # Notes

    @traced("create_note")
    def create_note(
        self,
        title: str,
        content: Optional[str] = "",
        tag_ids: Optional[List[str]] = None,
        creation_date: Optional[datetime.datetime] = None,
    ) -> Note:
        """Create and commit a note.

        Raises:
            ValidationError: Empty or whitespace-only title.
            TagNotFoundError: A tag id does not resolve.
        """
        _require_text(title, "title", ErrorCode.NOTE_TITLE_REQUIRED)
        with self._committing():
            note = self.notes.create(
                title=title,
                content=content,
                creation_date=creation_date,
                tag_ids=tag_ids or (),
            )
        logger.info(f"Created note {note.id}")
        return self.notes.get(note.id)

    @traced("edit_note")
    def edit_note(
        self,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Note:
        """Change a note's title and/or content and commit.

        Raises:
            ValidationError: ``title`` given but empty.
            NoteNotFoundError: The note does not exist.
        """
        if title is not None:
            _require_text(title, "title", ErrorCode.NOTE_TITLE_REQUIRED)
        with self._committing():
            note = self.notes.update(note_id, title=title, content=content)
        return note

    @traced("delete_note")
    def delete_note(self, note_id: str) -> None:
        """Delete a note and commit.

        Raises:
            NoteNotFoundError: The note does not exist.
        """
        with self._committing():
            self.notes.delete(note_id)
        logger.info(f"Deleted note {note_id}")

    def get_note(self, note_id: str) -> Optional[Note]:
        return self.notes.get(note_id)

    def require_note(self, note_id: str) -> Note:
        note = self.notes.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    @traced("list_notes")
    def list_notes(self, limit: Optional[int] = None, offset: int = 0) -> List[Note]:
        """Notes newest first."""
        return self.notes.get_all(limit=limit, offset=offset)

    def count_notes(self) -> int:
        return self.notes.count()

    @traced("toggle_tag")
    def toggle_tag(self, note_id: str, tag_id: str) -> Note:
        """Attach the tag if the note lacks it, otherwise detach it."""
        with self._committing():
            note = self.notes.toggle_tag(note_id, tag_id)
        return note

    def add_tag(self, note_id: str, tag_id: str) -> Note:
        with self._committing():
            note = self.notes.add_tag(note_id, tag_id)
        return note

    def remove_tag(self, note_id: str, tag_id: str) -> Note:
        with self._committing():
            note = self.notes.remove_tag(note_id, tag_id)
        return note

    # Tags

    @traced("create_tag")
    def create_tag(
        self, name: str, color: Optional[Union[str, TagColor]] = None
    ) -> Tag:
        """Create and commit a tag.

        Args:
            name: Display label; must not be empty.
            color: Palette key. Defaults to the tag editor colour.

        Raises:
            ValidationError: Empty name or unknown colour.
        """
        _require_text(name, "name", ErrorCode.TAG_NAME_REQUIRED)
        with self._committing():
            tag = self.tags.create(name, color or config.editor_tag_color)
        logger.info(f"Created tag {tag.id} '{name}'")
        return tag

    @traced("edit_tag")
    def edit_tag(
        self,
        tag_id: str,
        name: Optional[str] = None,
        color: Optional[Union[str, TagColor]] = None,
    ) -> Tag:
        """Rename and/or recolour a tag and commit."""
        if name is not None:
            _require_text(name, "name", ErrorCode.TAG_NAME_REQUIRED)
        with self._committing():
            tag = self.tags.update(tag_id, name=name, color=color)
        return tag

    @traced("delete_tag")
    def delete_tag(self, tag_id: str) -> None:
        """Delete a tag, detaching it from every note, and commit."""
        with self._committing():
            self.tags.delete(tag_id)
        logger.info(f"Deleted tag {tag_id}")

    def get_tag(self, tag_id: str) -> Optional[Tag]:
        return self.tags.get(tag_id)

    @traced("list_tags")
    def list_tags(self) -> List[Tag]:
        """Tags ordered by name, each with its note ids."""
        return self.tags.get_all()

    def tag_counts(self) -> Dict[str, int]:
        """Note count per tag id."""
        return self.tags.get_with_counts()
