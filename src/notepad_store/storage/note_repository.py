"""Repository for note storage and retrieval."""

import datetime
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import attributes, selectinload

from notepad_store.exceptions import NoteNotFoundError, TagNotFoundError
from notepad_store.models.db_models import DBNote, DBTag, note_tags
from notepad_store.models.schema import (
    Note,
    ensure_utc,
    generate_id,
    utc_now,
)
from notepad_store.storage.store import Handle
from notepad_store.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement; stay well below it
_ID_CHUNK = 500


def _chunks(ids: List[str], size: int = _ID_CHUNK) -> Iterable[List[str]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class NoteRepository:
    """Repository for note storage and retrieval within one handle.

    Every mutation is pending on the handle until ``handle.save()``. Tag
    membership is kept symmetric in memory: adding a tag to a note also
    puts the note in the tag's collection, and removal mirrors it.
    """

    def __init__(self, handle: Handle):
        """Initialize the repository.

        Args:
            handle: The store handle this repository reads and writes through.
        """
        self.handle = handle

    @property
    def session(self):
        return self.handle.session

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        """Convert a SQLAlchemy DBNote to a Note record."""
        tags = sorted(
            (TagRepository._db_tag_to_model(t) for t in db_note.tags),
            key=lambda tag: (tag.name, tag.id),
        )
        return Note(
            id=db_note.id,
            title=db_note.title,
            content=db_note.content,
            creation_date=ensure_utc(db_note.creation_date),
            tags=tags,
        )

    @staticmethod
    def newest_first(query):
        """Apply the total creation-date ordering used for every listing."""
        return query.order_by(DBNote.creation_date.desc(), DBNote.id.desc())

    def _require(self, note_id: str) -> DBNote:
        db_note = self.handle.lookup(DBNote, note_id)
        if db_note is None:
            raise NoteNotFoundError(note_id)
        return db_note

    def _require_tag(self, tag_id: str) -> DBTag:
        db_tag = self.handle.lookup(DBTag, tag_id)
        if db_tag is None:
            raise TagNotFoundError(tag_id)
        return db_tag

    def create(
        self,
        title: Optional[str] = None,
        content: Optional[str] = None,
        creation_date: Optional[datetime.datetime] = None,
        tag_ids: Iterable[str] = (),
        note_id: Optional[str] = None,
    ) -> Note:
        """Insert a new pending note.

        Args:
            title: Note title, may be empty or None.
            content: Note body, may be empty or None.
            creation_date: Creation timestamp; now (UTC) when omitted.
            tag_ids: Tags to attach.
            note_id: Explicit id; generated when omitted.

        Returns:
            The Note record with its assigned id.

        Raises:
            TagNotFoundError: If a tag id does not resolve in this handle.
        """
        with self.session.no_autoflush:
            db_note = self._insert(title, content, creation_date, tag_ids, note_id)
            return self._db_note_to_model(db_note)

    def insert(
        self,
        title: Optional[str] = None,
        content: Optional[str] = None,
        creation_date: Optional[datetime.datetime] = None,
        tag_ids: Iterable[str] = (),
        note_id: Optional[str] = None,
    ) -> str:
        """Like create(), but return only the id. Used for bulk inserts."""
        with self.session.no_autoflush:
            return self._insert(title, content, creation_date, tag_ids, note_id).id

    def _insert(self, title, content, creation_date, tag_ids, note_id) -> DBNote:
        # Nothing reaches the database before save()
        db_note = DBNote(
            id=note_id or generate_id(),
            title=title,
            content=content,
            creation_date=ensure_utc(creation_date or utc_now()),
        )
        for tag_id in tag_ids:
            db_note.tags.add(self._require_tag(tag_id))
        self.session.add(db_note)
        return db_note

    def get(self, note_id: str) -> Optional[Note]:
        """Get a note by ID.

        Returns:
            Note record if found, None otherwise.
        """
        db_note = self.handle.lookup(DBNote, note_id)
        if db_note is None:
            return None
        return self._db_note_to_model(db_note)

    def get_by_ids(self, ids: List[str]) -> List[Note]:
        """Resolve several ids in one pass, preserving request order.

        Ids that no longer resolve (deleted since they were issued) are
        skipped.
        """
        if not ids:
            return []
        found = {}
        for chunk in _chunks(list(dict.fromkeys(ids))):
            db_notes = self.session.scalars(
                select(DBNote)
                .where(DBNote.id.in_(chunk))
                .options(selectinload(DBNote.tags).selectinload(DBTag.notes))
            ).all()
            for db_note in db_notes:
                found[db_note.id] = self._db_note_to_model(db_note)
        missing = [nid for nid in ids if nid not in found]
        if missing:
            logger.debug(f"{len(missing)} note ids no longer resolve: {missing[:5]}")
        return [found[nid] for nid in ids if nid in found]

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[Note]:
        """Get all notes, newest first.

        Args:
            limit: Maximum number of notes to return. None for all notes.
            offset: Number of notes to skip (for pagination).
        """
        query = self.newest_first(
            select(DBNote).options(selectinload(DBNote.tags).selectinload(DBTag.notes))
        )
        if offset > 0:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return [self._db_note_to_model(n) for n in self.session.scalars(query).all()]

    def count(self) -> int:
        """Get total count of notes visible to this handle."""
        return self.session.scalar(select(func.count(DBNote.id))) or 0

    def find_by_tag(self, tag_id: str) -> List[Note]:
        """Get the notes carrying a tag, newest first."""
        query = self.newest_first(
            select(DBNote)
            .join(note_tags, DBNote.id == note_tags.c.note_id)
            .where(note_tags.c.tag_id == tag_id)
            .options(selectinload(DBNote.tags).selectinload(DBTag.notes))
        )
        return [self._db_note_to_model(n) for n in self.session.scalars(query).all()]

    def update(
        self,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Note:
        """Edit title and/or content. None leaves a field unchanged.

        The creation date is immutable and cannot be changed here.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        db_note = self._require(note_id)
        if title is not None:
            db_note.title = title
        if content is not None:
            db_note.content = content
        return self._db_note_to_model(db_note)

    def add_tag(self, note_id: str, tag_id: str) -> Note:
        """Attach a tag to a note (no-op if already attached)."""
        db_note = self._require(note_id)
        db_note.tags.add(self._require_tag(tag_id))
        return self._db_note_to_model(db_note)

    def remove_tag(self, note_id: str, tag_id: str) -> Note:
        """Detach a tag from a note (no-op if not attached)."""
        db_note = self._require(note_id)
        db_note.tags.discard(self._require_tag(tag_id))
        return self._db_note_to_model(db_note)

    def toggle_tag(self, note_id: str, tag_id: str) -> Note:
        """Attach the tag if missing, detach it if present."""
        db_note = self._require(note_id)
        db_tag = self._require_tag(tag_id)
        if db_tag in db_note.tags:
            db_note.tags.discard(db_tag)
        else:
            db_note.tags.add(db_tag)
        return self._db_note_to_model(db_note)

    def upsert(self, note: Note) -> Note:
        """Insert the note, or overwrite the row with its id.

        The record's tag list replaces the stored tag set. Tags referenced
        by the record must already exist in this handle. An existing row
        keeps its original creation date.
        """
        db_note = self.handle.lookup(DBNote, note.id)
        if db_note is None:
            db_note = DBNote(id=note.id, creation_date=note.creation_date)
            self.session.add(db_note)
        db_note.title = note.title
        db_note.content = note.content
        wanted = {self._require_tag(tag.id) for tag in note.tags}
        for db_tag in set(db_note.tags) - wanted:
            db_note.tags.discard(db_tag)
        for db_tag in wanted - set(db_note.tags):
            db_note.tags.add(db_tag)
        return self._db_note_to_model(db_note)

    def delete(self, note_id: str) -> None:
        """Delete a note and detach it from every tag.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        db_note = self._require(note_id)
        db_note.tags.clear()
        self.session.delete(db_note)

    def find_ids_created_before(self, cutoff: datetime.datetime) -> List[str]:
        """Ids of notes whose creation date is strictly before ``cutoff``."""
        return list(
            self.session.scalars(
                select(DBNote.id).where(DBNote.creation_date < ensure_utc(cutoff))
            ).all()
        )

    def delete_by_ids(self, note_ids: List[str]) -> int:
        """Delete many notes with set-based statements.

        Join rows go first so no tag is left pointing at a removed note,
        even with foreign-key enforcement off. The deletions are pending on
        the handle like any other change.

        Returns:
            Number of note rows deleted.
        """
        deleted = 0
        for chunk in _chunks(note_ids):
            self.session.execute(
                delete(note_tags).where(note_tags.c.note_id.in_(chunk))
            )
            result = self.session.execute(
                delete(DBNote)
                .where(DBNote.id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
            deleted += result.rowcount
        self.handle.record_bulk_delete(DBNote, note_ids)
        # Rows loaded in this handle are now stale
        removed = set(note_ids)
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, DBNote) and attributes.instance_state(obj).identity[0] in removed:
                self.session.expunge(obj)
            elif isinstance(obj, DBTag):
                self.session.expire(obj, ["notes"])
        return deleted
