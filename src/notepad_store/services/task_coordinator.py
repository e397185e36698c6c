"""Background bulk operations on isolated store handles.

Each operation runs on a worker thread with its own background handle,
commits there, and hands the committed change set back to the interactive
context through the ``MainQueue``. The interactive context merges it into
the primary view, then runs the caller's completion callback.
"""

import datetime
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from notepad_store.config import config
from notepad_store.exceptions import (
    BulkImportError,
    BulkOperationError,
    ErrorCode,
    NotePadError,
    TagNotFoundError,
    ValidationError,
)
from notepad_store.models.schema import ChangeSet, Note, RemoteChanges, utc_now
from notepad_store.observability import timed_operation
from notepad_store.services.main_queue import MainQueue
from notepad_store.services.search_service import SearchService
from notepad_store.storage.note_repository import NoteRepository
from notepad_store.storage.store import Handle, Store
from notepad_store.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class OperationKind(str, Enum):
    """Kinds of background operation. One of each kind runs at a time."""

    IMPORT = "import"
    SEARCH = "search"
    DELETE = "delete"
    REMOTE_MERGE = "remote_merge"


class OperationState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationOutcome:
    """What a completion callback receives."""

    kind: OperationKind
    result: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class OperationStatus:
    """Observable state of one operation kind."""

    kind: OperationKind
    state: OperationState = OperationState.IDLE
    result: Any = None
    error: Optional[Exception] = None
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None


Completion = Callable[[OperationOutcome], None]


class TaskCoordinator:
    """Runs bulk import, search and age-based delete off the interactive thread.

    Calls of the same kind are serialized: a second import waits until
    the first one's background work is done. Different kinds may overlap.

    Every public operation returns a ``concurrent.futures.Future``. The
    future resolves on the interactive thread, after the operation's
    changes are merged into ``store.main``, so draining the main queue (or
    calling ``wait()``) is what delivers results.
    """

    def __init__(
        self,
        store: Store,
        main_queue: Optional[MainQueue] = None,
        max_workers: Optional[int] = None,
        batch_size: Optional[int] = None,
        window_days: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the coordinator.

        Args:
            store: Store whose primary handle receives the merges.
            main_queue: Queue drained by the interactive thread. A new one
                owned by the calling thread is created when omitted.
            max_workers: Worker threads (default: config.max_workers).
            batch_size: Notes per import commit (default: config.import_batch_size).
            window_days: Span of random import dates (default: config.import_window_days).
            rng: Random source for import dates and tags.
        """
        self.store = store
        self.main_queue = main_queue or MainQueue()
        self.batch_size = batch_size or config.import_batch_size
        self.window_days = config.import_window_days if window_days is None else window_days
        self.rng = rng or random.Random()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.max_workers,
            thread_name_prefix="notepad-worker",
        )
        self._kind_locks: Dict[OperationKind, threading.Lock] = {
            kind: threading.Lock() for kind in OperationKind
        }
        self._status_lock = threading.Lock()
        self._status: Dict[OperationKind, OperationStatus] = {
            kind: OperationStatus(kind) for kind in OperationKind
        }
        self._in_flight: Dict[OperationKind, int] = {kind: 0 for kind in OperationKind}
        self._last_error: Dict[OperationKind, Optional[Exception]] = {
            kind: None for kind in OperationKind
        }
        self._closed = False

    def __enter__(self) -> "TaskCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # Status

    def status(self, kind: OperationKind) -> OperationStatus:
        """Snapshot of the state of one operation kind."""
        with self._status_lock:
            s = self._status[kind]
            return OperationStatus(
                kind=s.kind,
                state=s.state,
                result=s.result,
                error=s.error,
                started_at=s.started_at,
                finished_at=s.finished_at,
            )

    def last_error(self, kind: OperationKind) -> Optional[Exception]:
        """The error of the most recent failed run of ``kind``.

        Cleared when a later run of the same kind succeeds.
        """
        with self._status_lock:
            return self._last_error[kind]

    def _mark_running(self, kind: OperationKind) -> None:
        with self._status_lock:
            s = self._status[kind]
            s.state = OperationState.RUNNING
            s.started_at = utc_now()
            s.finished_at = None

    def _mark_finished(
        self, kind: OperationKind, result: Any, error: Optional[Exception]
    ) -> None:
        with self._status_lock:
            self._in_flight[kind] -= 1
            s = self._status[kind]
            s.result = result
            s.error = error
            s.finished_at = utc_now()
            self._last_error[kind] = error
            # Another call of this kind is still queued or running
            if self._in_flight[kind] > 0:
                s.state = OperationState.RUNNING
            elif error is None:
                s.state = OperationState.COMPLETED
            else:
                s.state = OperationState.FAILED

    # Plumbing

    def _post_merge(self, changes: ChangeSet) -> None:
        if not changes.is_empty:
            self.main_queue.post(lambda: self.store.merge(changes))

    def _submit(
        self,
        kind: OperationKind,
        work: Callable[[], Any],
        completion: Optional[Completion] = None,
        finish: Optional[Callable[[Any], Any]] = None,
    ) -> Future:
        """Run ``work`` on a worker, then ``finish`` and ``completion`` on main.

        ``finish`` maps the background payload to the final result using
        the primary handle.
        """
        if self._closed:
            raise RuntimeError("TaskCoordinator has been shut down")
        future: Future = Future()
        future.set_running_or_notify_cancel()
        with self._status_lock:
            self._in_flight[kind] += 1
            # Queued behind the kind lock still counts as running
            self._status[kind].state = OperationState.RUNNING

        def deliver(payload: Any, error: Optional[Exception]) -> None:
            result = None
            if error is None:
                try:
                    result = finish(payload) if finish is not None else payload
                except Exception as e:
                    error = e
            self._mark_finished(kind, result, error)
            if error is None:
                logger.info(f"Background {kind.value} completed")
                future.set_result(result)
            else:
                logger.error(f"{kind.value} failed: {error}")
                future.set_exception(error)
            if completion is not None:
                completion(OperationOutcome(kind=kind, result=result, error=error))

        def run() -> None:
            with self._kind_locks[kind]:
                self._mark_running(kind)
                try:
                    payload = work()
                except Exception as e:
                    self.main_queue.post(lambda error=e: deliver(None, error))
                    return
                self.main_queue.post(lambda: deliver(payload, None))

        self._executor.submit(run)
        return future

    def wait(self, future: Future, timeout: Optional[float] = None) -> Any:
        """Block the interactive thread until ``future`` resolves.

        The main queue is pumped while waiting, so merges and completions
        keep flowing.

        Raises:
            TimeoutError: The future did not resolve in time.
            Exception: Whatever the operation failed with.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while not future.done():
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise FutureTimeoutError("Timed out waiting for background operation")
                self.main_queue.drain(timeout=min(0.05, remaining))
            else:
                self.main_queue.drain(timeout=0.05)
        self.main_queue.drain()
        return future.result()

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work, finish running work, deliver what is queued."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait)
        if self.main_queue.is_owner():
            self.main_queue.drain()
        logger.debug("TaskCoordinator shut down")

    # Bulk import

    def import_sample_notes(
        self, count: int, completion: Optional[Completion] = None
    ) -> Future:
        """Generate ``count`` sample notes in the background.

        Phase one makes sure at least one tag exists, creating the fallback
        tag when the store has none. Phase two creates the notes with
        random dates inside the import window and one to three distinct
        random tags each, committing every ``batch_size`` notes.

        Resolves to True. Batches committed before a failure stay in the
        store; a retry starts from scratch.

        Raises:
            ValidationError: ``count`` is below 1 (raised immediately).
        """
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError(
                "Import count must be a positive integer",
                field="count",
                value=count,
                code=ErrorCode.INVALID_ARGUMENT,
            )
        return self._submit(
            OperationKind.IMPORT, lambda: self._run_import(count), completion
        )

    def _ensure_tags(self, handle: Handle, requested: int) -> List[str]:
        """Return the ids of the existing tags, creating the fallback tag if none."""
        tags = TagRepository(handle)
        tag_ids = tags.get_all_ids()
        if tag_ids:
            return tag_ids

        fallback = tags.create(config.fallback_tag_name, config.fallback_tag_color)
        self._post_merge(handle.save())
        logger.info(f"No tags found, created fallback tag '{fallback.name}' ({fallback.id})")

        tag_ids = tags.get_all_ids()
        if not tag_ids:
            raise BulkImportError(
                "No tags available after creating the fallback tag",
                requested=requested,
                code=ErrorCode.IMPORT_NO_TAGS,
            )
        return tag_ids

    def _run_import(self, count: int) -> bool:
        imported = 0
        with timed_operation("import_sample_notes", count=count) as op:
            try:
                with self.store.open_background("import") as handle:
                    tag_ids = self._ensure_tags(handle, count)
                    notes = NoteRepository(handle)
                    now = utc_now()
                    window = self.window_days * SECONDS_PER_DAY
                    generated_on = now.isoformat(timespec="seconds")
                    for i in range(count):
                        offset = self.rng.uniform(0, window)
                        picked = self.rng.sample(
                            tag_ids, self.rng.randint(1, min(3, len(tag_ids)))
                        )
                        notes.insert(
                            title=f"Sample Note {i + 1}",
                            content=(
                                f"This is sample content for note {i + 1}. "
                                f"Generated on {generated_on}."
                            ),
                            creation_date=now - datetime.timedelta(seconds=offset),
                            tag_ids=picked,
                        )
                        if (i + 1) % self.batch_size == 0:
                            self._post_merge(handle.save())
                            imported = i + 1
                    self._post_merge(handle.save())
                    imported = count
            except BulkImportError:
                raise
            except (NotePadError, SQLAlchemyError) as e:
                raise BulkImportError(
                    f"Import aborted after {imported} of {count} notes: {e}",
                    requested=count,
                    imported=imported,
                    original_error=e,
                ) from e
            op["imported"] = imported
        return True

    # Search

    def search_notes(
        self,
        query: Optional[str] = "",
        tag_id: Optional[str] = None,
        completion: Optional[Completion] = None,
    ) -> Future:
        """Find notes matching ``query`` and, if given, carrying ``tag_id``.

        The predicate runs on a background handle; the matching ids are
        resolved through the primary handle. Resolves to a list of
        ``Note`` records, newest first. An empty query with no tag matches
        every note.

        Fails with TagNotFoundError when ``tag_id`` no longer resolves.
        """
        def work() -> List[str]:
            with timed_operation("search_notes", query=query, tag_id=tag_id) as op:
                with self.store.open_background("search") as handle:
                    if tag_id is not None and TagRepository(handle).get(tag_id) is None:
                        raise TagNotFoundError(tag_id)
                    ids = SearchService(handle).find_ids(query, tag_id)
                op["result_count"] = len(ids)
                return ids

        def resolve(ids: List[str]) -> List[Note]:
            return NoteRepository(self.store.main).get_by_ids(ids)

        return self._submit(OperationKind.SEARCH, work, completion, finish=resolve)

    # Bulk delete

    def delete_old_notes(
        self, older_than_days: int, completion: Optional[Completion] = None
    ) -> Future:
        """Delete every note created more than ``older_than_days`` days ago.

        Notes and their tag links go in one transaction. Resolves to the
        number of notes deleted.

        Raises:
            ValidationError: ``older_than_days`` is negative (raised immediately).
        """
        if isinstance(older_than_days, bool) or not isinstance(older_than_days, (int, float)) \
                or older_than_days < 0:
            raise ValidationError(
                "older_than_days must be a non-negative number",
                field="older_than_days",
                value=older_than_days,
                code=ErrorCode.INVALID_ARGUMENT,
            )
        return self._submit(
            OperationKind.DELETE, lambda: self._run_delete(older_than_days), completion
        )

    def _run_delete(self, older_than_days: float) -> int:
        cutoff = utc_now() - datetime.timedelta(days=older_than_days)
        note_ids: List[str] = []
        with timed_operation("delete_old_notes", older_than_days=older_than_days) as op:
            try:
                with self.store.open_background("purge") as handle:
                    notes = NoteRepository(handle)
                    note_ids = notes.find_ids_created_before(cutoff)
                    if not note_ids:
                        op["deleted"] = 0
                        return 0
                    deleted = notes.delete_by_ids(note_ids)
                    changes = handle.save()
            except (NotePadError, SQLAlchemyError) as e:
                raise BulkOperationError(
                    f"Failed to delete notes older than {older_than_days} days: {e}",
                    operation="delete_old_notes",
                    total_count=len(note_ids),
                    success_count=0,
                    failed_ids=note_ids,
                    original_error=e,
                ) from e
            self._post_merge(changes)
            op["deleted"] = deleted
        return deleted

    # Remote merge

    def merge_remote_changes(
        self, changes: RemoteChanges, completion: Optional[Completion] = None
    ) -> Future:
        """Apply records pushed by a remote-sync collaborator.

        Tags and notes are upserted by id, property by property, then the
        deleted ids are removed. Ids already absent are ignored. Everything
        commits in one transaction on a background handle and merges into
        the primary view like any other operation. Resolves to the
        committed ``ChangeSet``.
        """
        return self._submit(
            OperationKind.REMOTE_MERGE, lambda: self._run_remote_merge(changes), completion
        )

    def _run_remote_merge(self, remote: RemoteChanges) -> ChangeSet:
        total = len(remote.notes) + len(remote.tags) + len(remote.deleted_note_ids) \
            + len(remote.deleted_tag_ids)
        if remote.is_empty:
            return ChangeSet(origin="remote")
        with timed_operation("merge_remote_changes", records=total):
            try:
                with self.store.open_background("remote") as handle:
                    tags = TagRepository(handle)
                    notes = NoteRepository(handle)
                    for tag in remote.tags:
                        tags.upsert(tag)
                    handle.session.flush()
                    for note in remote.notes:
                        notes.upsert(note)
                    for note_id in remote.deleted_note_ids:
                        if notes.get(note_id) is not None:
                            notes.delete(note_id)
                    for tag_id in remote.deleted_tag_ids:
                        if tags.get(tag_id) is not None:
                            tags.delete(tag_id)
                    committed = handle.save()
            except (NotePadError, SQLAlchemyError) as e:
                raise BulkOperationError(
                    f"Failed to apply remote changes: {e}",
                    operation="merge_remote_changes",
                    total_count=total,
                    success_count=0,
                    failed_ids=[n.id for n in remote.notes] + [t.id for t in remote.tags],
                    original_error=e,
                ) from e
        self._post_merge(committed)
        return committed
