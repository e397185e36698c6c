"""Embedded store with a primary handle and isolated background handles."""
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, attributes

from notepad_store.exceptions import ErrorCode, PersistenceError
from notepad_store.models.db_models import DBNote, DBTag, get_session_factory, init_db
from notepad_store.models.schema import ChangeSet

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeSet], None]


class _PendingChanges:
    """Ids touched by flushes since the last commit or rollback."""

    def __init__(self) -> None:
        self.clear()

    def clear(self) -> None:
        self.inserted: Dict[type, Set[str]] = {DBNote: set(), DBTag: set()}
        self.updated: Dict[type, Set[str]] = {DBNote: set(), DBTag: set()}
        self.deleted: Dict[type, Set[str]] = {DBNote: set(), DBTag: set()}

    def to_change_set(self, origin: str) -> ChangeSet:
        deleted_notes = frozenset(self.deleted[DBNote])
        deleted_tags = frozenset(self.deleted[DBTag])
        inserted_notes = frozenset(self.inserted[DBNote]) - deleted_notes
        inserted_tags = frozenset(self.inserted[DBTag]) - deleted_tags
        return ChangeSet(
            origin=origin,
            inserted_notes=inserted_notes,
            updated_notes=frozenset(self.updated[DBNote]) - deleted_notes - inserted_notes,
            deleted_notes=deleted_notes,
            inserted_tags=inserted_tags,
            updated_tags=frozenset(self.updated[DBTag]) - deleted_tags - inserted_tags,
            deleted_tags=deleted_tags,
        )


class Handle:
    """An isolated read/write session against the store.

    Each handle owns one SQLAlchemy session and therefore its own set of
    pending changes. Rows created or modified through a handle are visible
    only to that handle until ``save()`` commits them.

    A handle must only be used from one thread at a time. The primary
    handle belongs to the interactive context; background handles belong to
    the worker that opened them.
    """

    def __init__(self, store: "Store", session: Session, name: str, background: bool):
        self.store = store
        self.session = session
        self.name = name
        self.background = background
        self._pending = _PendingChanges()
        self._closed = False
        event.listen(session, "after_flush", self._record_flush)

    def __enter__(self) -> "Handle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.rollback()
        self.close()

    def __repr__(self) -> str:
        return f"<Handle(name='{self.name}', background={self.background})>"

    @property
    def closed(self) -> bool:
        return self._closed

    def _record_flush(self, session: Session, flush_context) -> None:
        for obj in session.new:
            if isinstance(obj, (DBNote, DBTag)):
                self._pending.inserted[type(obj)].add(obj.id)
        for obj in session.dirty:
            if isinstance(obj, (DBNote, DBTag)) and session.is_modified(obj):
                self._pending.updated[type(obj)].add(obj.id)
        for obj in session.deleted:
            if isinstance(obj, (DBNote, DBTag)):
                self._pending.deleted[type(obj)].add(obj.id)

    def lookup(self, entity: type, entity_id: str):
        """Find a row by id, including rows created here and not yet flushed."""
        obj = self.session.get(entity, entity_id)
        if obj is not None:
            return obj
        for pending in self.session.new:
            if isinstance(pending, entity) and pending.id == entity_id:
                return pending
        return None

    def record_bulk_delete(self, entity: type, ids: List[str]) -> None:
        """Register rows removed by a core DELETE that bypassed the ORM."""
        self._pending.deleted[entity].update(ids)

    def has_changes(self) -> bool:
        """True if the handle holds uncommitted work."""
        if self.session.new or self.session.deleted:
            return True
        if any(self.session.is_modified(obj) for obj in self.session.dirty):
            return True
        return not self._pending.to_change_set(self.name).is_empty

    def save(self) -> ChangeSet:
        """Commit every pending insert, update and delete atomically.

        On failure the handle is rolled back in full; no part of the
        pending set is committed.

        Returns:
            The ids touched by this commit.

        Raises:
            PersistenceError: Constraint violation or I/O failure.
        """
        try:
            self.session.flush()
            changes = self._pending.to_change_set(self.name)
            self.session.commit()
        except IntegrityError as e:
            self.rollback()
            logger.error(f"Commit on handle '{self.name}' violated a constraint: {e}")
            raise PersistenceError(
                "Commit violated a store constraint",
                operation="save",
                code=ErrorCode.CONSTRAINT_VIOLATION,
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            self.rollback()
            logger.error(f"Commit on handle '{self.name}' failed: {e}")
            raise PersistenceError(
                "Commit failed",
                operation="save",
                code=ErrorCode.COMMIT_FAILED,
                original_error=e,
            ) from e

        self._pending.clear()
        if not changes.is_empty:
            logger.debug(
                f"Handle '{self.name}' committed: "
                f"+{len(changes.inserted_notes)}/~{len(changes.updated_notes)}/"
                f"-{len(changes.deleted_notes)} notes, "
                f"+{len(changes.inserted_tags)}/~{len(changes.updated_tags)}/"
                f"-{len(changes.deleted_tags)} tags"
            )
        if not self.background:
            self.store.notify(changes)
        return changes

    def rollback(self) -> None:
        """Discard every pending change in this handle."""
        self.session.rollback()
        self._pending.clear()

    def refresh_from(self, changes: ChangeSet) -> None:
        """Reconcile this handle's identity map with another handle's commit.

        Deleted rows are evicted. Updated rows have their loaded state
        expired so the next access reads the committed values, except for
        attributes this handle has modified itself and not yet saved: those
        keep the local value and will overwrite on the next save.
        """
        session = self.session
        for entity, deleted in ((DBNote, changes.deleted_notes), (DBTag, changes.deleted_tags)):
            for entity_id in deleted:
                obj = session.identity_map.get(session.identity_key(entity, entity_id))
                if obj is not None and obj not in session.deleted:
                    session.expunge(obj)

        # Relationship collections on the far side may change with any
        # insert, update or delete, so they are expired on every tracked row.
        touched = {
            DBNote: changes.inserted_notes | changes.updated_notes,
            DBTag: changes.inserted_tags | changes.updated_tags,
        }
        relationship_changed = not changes.is_empty
        for obj in list(session.identity_map.values()):
            if not isinstance(obj, (DBNote, DBTag)):
                continue
            state = attributes.instance_state(obj)
            if state.deleted or state.detached or state.was_deleted:
                continue
            locally_modified = set(state.committed_state)
            if state.identity[0] in touched[type(obj)]:
                stale = [
                    key for key in state.mapper.column_attrs.keys()
                    if key not in locally_modified and key != "id"
                ]
                if stale:
                    session.expire(obj, stale)
            if relationship_changed:
                rel_key = "tags" if isinstance(obj, DBNote) else "notes"
                if rel_key not in locally_modified:
                    session.expire(obj, [rel_key])

    def close(self) -> None:
        """Release the session. Uncommitted work is discarded."""
        if self._closed:
            return
        event.remove(self.session, "after_flush", self._record_flush)
        self.session.close()
        self._closed = True
        self.store._forget(self)


class Store:
    """Durable storage of notes and tags with one primary view.

    The store owns the engine, the primary handle used by the interactive
    context, and any background handles opened for bulk work. Committed
    background changes reach the primary view only through ``merge()``.

    Construct one store per process (or per request) and pass it to the
    components that need it; ``close()`` tears everything down.
    """

    def __init__(
        self,
        database_path: Optional[Path] = None,
        engine: Optional[Engine] = None,
    ):
        """Open the store.

        Args:
            database_path: SQLite file path. Defaults to config.database_path.
            engine: Pre-configured engine to use instead of opening one.

        Raises:
            StoreOpenError: The database cannot be opened or migrated.
        """
        self.engine = engine if engine is not None else init_db(database_path)
        self.session_factory = get_session_factory(self.engine)
        self._listeners: List[ChangeListener] = []
        self._listeners_lock = threading.Lock()
        self._handles_lock = threading.Lock()
        self._background: Set[Handle] = set()
        self._background_counter = 0
        self._closed = False
        # The primary handle never flushes before save(), so unsaved edits
        # hold no write lock that would stall background writers
        self.main = Handle(
            self, self.session_factory(autoflush=False), "main", background=False
        )
        logger.info(f"Store opened: {self.engine.url}")

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def open_background(self, name: Optional[str] = None) -> Handle:
        """Open an independent handle with its own pending-change set."""
        if self._closed:
            raise PersistenceError(
                "Store is closed", operation="open_background",
                code=ErrorCode.STORAGE_READ_FAILED,
            )
        with self._handles_lock:
            self._background_counter += 1
            handle_name = name or f"background-{self._background_counter}"
            handle = Handle(self, self.session_factory(), handle_name, background=True)
            self._background.add(handle)
        logger.debug(f"Opened background handle '{handle_name}'")
        return handle

    def _forget(self, handle: Handle) -> None:
        with self._handles_lock:
            self._background.discard(handle)

    def merge(self, changes: ChangeSet) -> None:
        """Fold a background commit into the primary view and notify.

        Must run on the interactive context, which owns the primary handle.
        """
        if changes.is_empty:
            return
        self.main.refresh_from(changes)
        logger.debug(f"Merged changes from '{changes.origin}' into primary view")
        self.notify(changes)

    def subscribe(self, listener: ChangeListener) -> None:
        """Register an observer called with each primary-view change."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def notify(self, changes: ChangeSet) -> None:
        if changes.is_empty:
            return
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(changes)
            except Exception as e:
                # An observer must not break the commit that triggered it
                logger.warning(f"Change listener {listener!r} failed: {e}")

    def close(self) -> None:
        """Close every handle and dispose of the engine."""
        if self._closed:
            return
        with self._handles_lock:
            handles = list(self._background)
        for handle in handles:
            handle.close()
        self.main.close()
        self.engine.dispose()
        self._closed = True
        logger.info("Store closed")
