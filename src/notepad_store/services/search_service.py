"""Predicate search over notes."""

import logging
from typing import Any, List, Optional

from sqlalchemy import and_, func, or_, select, true

from notepad_store.models.db_models import DBNote, DBTag
from notepad_store.models.schema import Note
from notepad_store.storage.note_repository import NoteRepository
from notepad_store.storage.store import Handle
from notepad_store.utils import escape_like_pattern, fold_text

logger = logging.getLogger(__name__)


class SearchService:
    """Builds and runs note filters against a single handle.

    A filter is a free-text part and an optional tag part:

    - text: case- and diacritic-insensitive substring of title OR content
    - tag: the note carries the tag with the given id

    The two parts are ANDed. A blank or absent query with no tag
    matches every note.
    """

    def __init__(self, handle: Handle):
        self.handle = handle

    @staticmethod
    def build_predicate(query: Optional[str] = None, tag_id: Optional[str] = None) -> Any:
        """Build the WHERE clause for a search."""
        clauses = []
        if query and query.strip():
            pattern = f"%{escape_like_pattern(fold_text(query))}%"
            clauses.append(
                or_(
                    func.fold(DBNote.title).like(pattern, escape="\\"),
                    func.fold(DBNote.content).like(pattern, escape="\\"),
                )
            )
        if tag_id is not None:
            clauses.append(DBNote.tags.any(DBTag.id == tag_id))
        if not clauses:
            return true()
        return and_(*clauses)

    def find_ids(self, query: Optional[str] = None, tag_id: Optional[str] = None) -> List[str]:
        """Ids of matching notes, newest first.

        Ids are what cross handle boundaries; resolve them through the
        handle that will present the results.
        """
        statement = NoteRepository.newest_first(
            select(DBNote.id).where(self.build_predicate(query, tag_id))
        )
        ids = list(self.handle.session.scalars(statement).all())
        logger.debug(
            f"Search on '{self.handle.name}' query={query!r} tag={tag_id}: {len(ids)} hits"
        )
        return ids

    def count(self, query: Optional[str] = None, tag_id: Optional[str] = None) -> int:
        """Count matching notes without loading them."""
        statement = select(func.count(DBNote.id)).where(self.build_predicate(query, tag_id))
        return self.handle.session.scalar(statement) or 0

    def search(self, query: Optional[str] = None, tag_id: Optional[str] = None) -> List[Note]:
        """Run the search and return records from this same handle."""
        return NoteRepository(self.handle).get_by_ids(self.find_ids(query, tag_id))
