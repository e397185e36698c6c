"""Repository for tag storage and retrieval."""
import logging
from typing import Dict, List, Optional, Union

from sqlalchemy import func, select

from notepad_store.exceptions import ErrorCode, TagNotFoundError, ValidationError
from notepad_store.models.db_models import DBTag, note_tags
from notepad_store.models.schema import Tag, TagColor, generate_id
from notepad_store.storage.store import Handle

logger = logging.getLogger(__name__)


def coerce_color(color: Union[str, TagColor]) -> TagColor:
    """Map a palette key to TagColor, rejecting anything else."""
    try:
        return TagColor(color)
    except ValueError as e:
        raise ValidationError(
            f"Unknown tag color '{color}'. "
            f"Use one of: {', '.join(c.value for c in TagColor)}",
            field="color",
            value=color,
            code=ErrorCode.TAG_COLOR_INVALID,
        ) from e


class TagRepository:
    """Repository for managing tags within one handle.

    Changes made here are pending on the handle until ``handle.save()``.
    Returned values are plain ``Tag`` records, never ORM rows.
    """

    def __init__(self, handle: Handle):
        """Initialize the tag repository.

        Args:
            handle: The store handle this repository reads and writes through.
        """
        self.handle = handle

    @property
    def session(self):
        return self.handle.session

    @staticmethod
    def _db_tag_to_model(db_tag: DBTag) -> Tag:
        """Convert a DBTag to a Tag record."""
        return Tag(
            id=db_tag.id,
            name=db_tag.name,
            color=db_tag.color,
            note_ids=sorted(note.id for note in db_tag.notes),
        )

    def _require(self, tag_id: str) -> DBTag:
        db_tag = self.handle.lookup(DBTag, tag_id)
        if db_tag is None:
            raise TagNotFoundError(tag_id)
        return db_tag

    def create(
        self,
        name: Optional[str],
        color: Union[str, TagColor] = TagColor.GRAY,
        tag_id: Optional[str] = None,
    ) -> Tag:
        """Insert a new pending tag.

        Args:
            name: Display label. Not required to be unique.
            color: Palette key.
            tag_id: Explicit id; generated when omitted.

        Returns:
            The Tag record with its assigned id.
        """
        db_tag = DBTag(id=tag_id or generate_id(), name=name, color=coerce_color(color).value)
        self.session.add(db_tag)
        return self._db_tag_to_model(db_tag)

    def get(self, tag_id: str) -> Optional[Tag]:
        """Get a tag by ID.

        Returns:
            The Tag record if found, None otherwise.
        """
        db_tag = self.handle.lookup(DBTag, tag_id)
        if db_tag is None:
            return None
        return self._db_tag_to_model(db_tag)

    def get_by_name(self, name: str) -> List[Tag]:
        """Get every tag carrying this name (names are not unique)."""
        db_tags = self.session.scalars(
            select(DBTag).where(DBTag.name == name).order_by(DBTag.id)
        ).all()
        return [self._db_tag_to_model(t) for t in db_tags]

    def get_all(self) -> List[Tag]:
        """Get all tags ordered by name.

        Returns:
            List of all Tag records, ties broken by id.
        """
        db_tags = self.session.scalars(
            select(DBTag).order_by(DBTag.name.asc(), DBTag.id.asc())
        ).all()
        return [self._db_tag_to_model(t) for t in db_tags]

    def get_all_ids(self) -> List[str]:
        """Get the ids of every tag."""
        return list(self.session.scalars(select(DBTag.id).order_by(DBTag.id)).all())

    def count(self) -> int:
        """Count tags visible to this handle."""
        return self.session.scalar(select(func.count(DBTag.id))) or 0

    def get_with_counts(self) -> Dict[str, int]:
        """Get every tag id with its note count.

        Returns:
            Dictionary mapping tag ids to the number of notes carrying them.
        """
        result = self.session.execute(
            select(DBTag.id, func.count(note_tags.c.note_id))
            .select_from(DBTag)
            .outerjoin(note_tags, DBTag.id == note_tags.c.tag_id)
            .group_by(DBTag.id)
        ).all()
        return {tag_id: count for tag_id, count in result}

    def update(
        self,
        tag_id: str,
        name: Optional[str] = None,
        color: Optional[Union[str, TagColor]] = None,
    ) -> Tag:
        """Rename and/or recolor a tag.

        Raises:
            TagNotFoundError: If the tag does not exist.
        """
        db_tag = self._require(tag_id)
        if name is not None:
            db_tag.name = name
        if color is not None:
            db_tag.color = coerce_color(color).value
        return self._db_tag_to_model(db_tag)

    def upsert(self, tag: Tag) -> Tag:
        """Insert the tag, or overwrite name and color of the row with its id."""
        db_tag = self.handle.lookup(DBTag, tag.id)
        if db_tag is None:
            db_tag = DBTag(id=tag.id)
            self.session.add(db_tag)
        db_tag.name = tag.name
        db_tag.color = coerce_color(tag.color).value
        return self._db_tag_to_model(db_tag)

    def delete(self, tag_id: str) -> None:
        """Delete a tag and detach it from every note.

        Raises:
            TagNotFoundError: If the tag does not exist.
        """
        db_tag = self._require(tag_id)
        # Detach first so loaded notes drop the tag from their collections
        affected = len(db_tag.notes)
        db_tag.notes.clear()
        self.session.delete(db_tag)
        logger.debug(f"Deleted tag {tag_id}, detached from {affected} notes")
