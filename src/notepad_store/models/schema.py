"""Data models for the NotePad store.

These are the plain records handed to callers. ORM rows never cross a
handle boundary; everything outside a handle works with these ids and
values instead.
"""

import datetime
import os
import threading
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_utc(dt_value: datetime.datetime) -> datetime.datetime:
    """Return the datetime as timezone-aware UTC.

    Naive datetimes are treated as UTC, which is how SQLite hands stored
    values back (the DateTime column does not keep tzinfo).

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same instant expressed in UTC.
    """
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


# Monotonic id state shared by all threads in the process
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = 0
_pid_suffix = f"{os.getpid() % 0x10000:04x}"


def generate_id() -> str:
    """Generate a time-ordered unique identifier.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc-pppp" where:
        - YYYYMMDDTHHMMSS is the UTC date and time
        - ssssss is the 6-digit microsecond component
        - cccccc is a counter for ids issued in the same microsecond
        - pppp is derived from the process ID for cross-process uniqueness

    Ids issued by one process sort in issue order, which is what the
    creation-date tie-break relies on.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp <= _last_timestamp:
            # Same microsecond (or clock stepped back): keep the last
            # timestamp and bump the counter so ordering still holds
            current_timestamp = _last_timestamp
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = 0

        stamp = datetime.datetime.fromtimestamp(
            current_timestamp / 1_000_000, tz=timezone.utc
        )
        date_time = stamp.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{stamp.microsecond:06d}{_counter:06d}-{_pid_suffix}"


class TagColor(str, Enum):
    """Fixed palette of tag colours."""

    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    PINK = "pink"
    GRAY = "gray"


class Tag(BaseModel):
    """A tag for categorizing notes."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the tag")
    name: str = Field(default="", description="Display label")
    color: TagColor = Field(default=TagColor.GRAY, description="Palette key")
    note_ids: List[str] = Field(
        default_factory=list, description="IDs of notes carrying this tag"
    )

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> str:
        """Treat an absent name as empty."""
        return v if v is not None else ""

    @field_validator("color", mode="before")
    @classmethod
    def validate_color(cls, v: Optional[str]) -> str:
        """Absent colours fall back to gray."""
        return v if v is not None else TagColor.GRAY

    @property
    def note_count(self) -> int:
        """Number of notes carrying this tag."""
        return len(self.note_ids)

    def __str__(self) -> str:
        """Return string representation of tag."""
        return self.name


class Note(BaseModel):
    """A note with its tags."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    title: Optional[str] = Field(default=None, description="Title of the note")
    content: Optional[str] = Field(default=None, description="Content of the note")
    creation_date: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    tags: List[Tag] = Field(default_factory=list, description="Tags on this note")

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("creation_date")
    @classmethod
    def validate_creation_date(cls, v: datetime.datetime) -> datetime.datetime:
        """Normalise creation dates to timezone-aware UTC."""
        return ensure_utc(v)

    @property
    def tag_ids(self) -> FrozenSet[str]:
        """IDs of the tags on this note."""
        return frozenset(tag.id for tag in self.tags)

    def has_tag(self, tag_id: str) -> bool:
        """Check whether the note carries the given tag."""
        return tag_id in self.tag_ids


@dataclass(frozen=True)
class ChangeSet:
    """Identifiers touched by one commit (or a merge of several).

    Attributes:
        origin: Name of the handle that produced the change.
        inserted_notes / updated_notes / deleted_notes: Note ids.
        inserted_tags / updated_tags / deleted_tags: Tag ids.
    """

    origin: str = "main"
    inserted_notes: FrozenSet[str] = frozenset()
    updated_notes: FrozenSet[str] = frozenset()
    deleted_notes: FrozenSet[str] = frozenset()
    inserted_tags: FrozenSet[str] = frozenset()
    updated_tags: FrozenSet[str] = frozenset()
    deleted_tags: FrozenSet[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        """True when the commit touched nothing."""
        return not (
            self.inserted_notes
            or self.updated_notes
            or self.deleted_notes
            or self.inserted_tags
            or self.updated_tags
            or self.deleted_tags
        )

    def union(self, other: "ChangeSet") -> "ChangeSet":
        """Combine two change sets, keeping this one's origin.

        An id deleted in either set is reported only as deleted.
        """
        deleted_notes = self.deleted_notes | other.deleted_notes
        deleted_tags = self.deleted_tags | other.deleted_tags
        return ChangeSet(
            origin=self.origin,
            inserted_notes=(self.inserted_notes | other.inserted_notes) - deleted_notes,
            updated_notes=(self.updated_notes | other.updated_notes) - deleted_notes,
            deleted_notes=deleted_notes,
            inserted_tags=(self.inserted_tags | other.inserted_tags) - deleted_tags,
            updated_tags=(self.updated_tags | other.updated_tags) - deleted_tags,
            deleted_tags=deleted_tags,
        )


@dataclass
class RemoteChanges:
    """Rows pushed in by a remote-sync collaborator.

    Notes and tags are upserted by id; deleted ids are removed. A note's
    ``tags`` list replaces its tag set wholesale.
    """

    notes: List[Note] = field(default_factory=list)
    tags: List[Tag] = field(default_factory=list)
    deleted_note_ids: List[str] = field(default_factory=list)
    deleted_tag_ids: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to apply."""
        return not (
            self.notes or self.tags or self.deleted_note_ids or self.deleted_tag_ids
        )

    @classmethod
    def from_records(
        cls,
        notes: Iterable[Note] = (),
        tags: Iterable[Tag] = (),
        deleted_note_ids: Iterable[str] = (),
        deleted_tag_ids: Iterable[str] = (),
    ) -> "RemoteChanges":
        return cls(
            notes=list(notes),
            tags=list(tags),
            deleted_note_ids=list(deleted_note_ids),
            deleted_tag_ids=list(deleted_tag_ids),
        )
