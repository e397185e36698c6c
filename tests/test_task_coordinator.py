"""Tests for background bulk operations and their merge into the primary view."""
import datetime
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from notepad_store.exceptions import (
    BulkImportError,
    BulkOperationError,
    ErrorCode,
    PersistenceError,
    TagNotFoundError,
    ValidationError,
)
from notepad_store.models.schema import Note, RemoteChanges, Tag, TagColor, utc_now
from notepad_store.services.main_queue import MainQueue
from notepad_store.services.task_coordinator import (
    OperationKind,
    OperationState,
    TaskCoordinator,
)
from notepad_store.storage.note_repository import NoteRepository
from notepad_store.storage.tag_repository import TagRepository


class TestBulkImport:
    """Two-phase sample import."""

    def test_import_with_no_tags_creates_fallback(self, coordinator, store):
        assert coordinator.wait(coordinator.import_sample_notes(25), timeout=30) is True

        tags = TagRepository(store.main).get_all()
        assert len(tags) == 1
        assert (tags[0].name, tags[0].color) == ("Sample", TagColor.BLUE)

        notes = NoteRepository(store.main).get_all()
        assert len(notes) == 25
        assert all(n.tag_ids == frozenset({tags[0].id}) for n in notes)

    def test_each_note_gets_one_to_three_distinct_tags(self, coordinator, service, store):
        tag_ids = {service.create_tag(f"t{i}").id for i in range(5)}
        coordinator.wait(coordinator.import_sample_notes(40), timeout=30)

        notes = NoteRepository(store.main).get_all()
        assert len(notes) == 40
        for note in notes:
            assert 1 <= len(note.tags) <= 3
            assert note.tag_ids <= tag_ids
        assert TagRepository(store.main).count() == 5

    def test_titles_contents_and_dates(self, coordinator, store):
        before = utc_now()
        coordinator.wait(coordinator.import_sample_notes(12), timeout=30)
        notes = NoteRepository(store.main).get_all()

        assert {n.title for n in notes} == {f"Sample Note {i}" for i in range(1, 13)}
        note_one = next(n for n in notes if n.title == "Sample Note 1")
        assert note_one.content.startswith("This is sample content for note 1. Generated on ")
        window_start = before - datetime.timedelta(days=30, seconds=1)
        assert all(window_start <= n.creation_date <= utc_now() for n in notes)

    def test_commits_in_batches_and_merges_each(self, coordinator, store):
        merged = []
        store.subscribe(merged.append)
        coordinator.wait(coordinator.import_sample_notes(25), timeout=30)

        note_batches = [len(c.inserted_notes) for c in merged if c.inserted_notes]
        assert note_batches == [10, 10, 5]
        assert any(c.inserted_tags for c in merged)
        assert all(c.origin == "import" for c in merged)

    def test_count_must_be_positive(self, coordinator):
        for bad in (0, -3, "10", True):
            with pytest.raises(ValidationError) as exc_info:
                coordinator.import_sample_notes(bad)
            assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    def test_fallback_is_attempted_once(self, coordinator):
        with patch.object(TagRepository, "get_all_ids", return_value=[]):
            future = coordinator.import_sample_notes(5)
            with pytest.raises(BulkImportError) as exc_info:
                coordinator.wait(future, timeout=30)
        assert exc_info.value.code == ErrorCode.IMPORT_NO_TAGS
        assert exc_info.value.requested == 5

    def test_failure_is_reported(self, coordinator, store):
        outcomes = []
        with patch.object(
            NoteRepository, "insert", side_effect=PersistenceError("disk full")
        ):
            future = coordinator.import_sample_notes(5, completion=outcomes.append)
            with pytest.raises(BulkImportError) as exc_info:
                coordinator.wait(future, timeout=30)

        error = exc_info.value
        assert isinstance(error.original_error, PersistenceError)
        assert error.imported == 0
        assert coordinator.last_error(OperationKind.IMPORT) is error
        assert coordinator.status(OperationKind.IMPORT).state == OperationState.FAILED
        assert len(outcomes) == 1 and not outcomes[0].ok
        assert NoteRepository(store.main).count() == 0

    def test_success_clears_last_error(self, coordinator):
        with patch.object(NoteRepository, "insert", side_effect=PersistenceError("x")):
            with pytest.raises(BulkImportError):
                coordinator.wait(coordinator.import_sample_notes(1), timeout=30)
        assert coordinator.last_error(OperationKind.IMPORT) is not None
        coordinator.wait(coordinator.import_sample_notes(1), timeout=30)
        assert coordinator.last_error(OperationKind.IMPORT) is None


class TestBulkDelete:
    """Age-based bulk delete."""

    def test_deletes_exactly_notes_older_than_cutoff(self, coordinator, service, store, days_ago):
        """A(day 0), B(day 10), C(day 40): purging 30 days removes only C."""
        work = service.create_tag("Work", "blue")
        home = service.create_tag("Home", "green")
        a = service.create_note("A", tag_ids=[work.id], creation_date=days_ago(0))
        b = service.create_note("B", tag_ids=[work.id, home.id], creation_date=days_ago(10))
        c = service.create_note("C", tag_ids=[home.id], creation_date=days_ago(40))

        assert coordinator.wait(coordinator.delete_old_notes(30), timeout=30) == 1

        notes = NoteRepository(store.main)
        assert notes.get(c.id) is None
        assert notes.get(a.id).tag_ids == frozenset({work.id})
        assert notes.get(b.id).tag_ids == frozenset({work.id, home.id})
        assert service.get_tag(home.id).note_ids == [b.id]

    def test_boundary(self, coordinator, service, days_ago):
        for days in (5, 29, 31, 100):
            service.create_note(f"n{days}", creation_date=days_ago(days))
        assert coordinator.wait(coordinator.delete_old_notes(30), timeout=30) == 2
        assert sorted(n.title for n in service.list_notes()) == ["n29", "n5"]

    def test_nothing_to_delete(self, coordinator, service):
        service.create_note("fresh")
        assert coordinator.wait(coordinator.delete_old_notes(30), timeout=30) == 0
        assert service.count_notes() == 1

    def test_zero_days_deletes_everything_before_now(self, coordinator, service, days_ago):
        service.create_note("yesterday", creation_date=days_ago(1))
        assert coordinator.wait(coordinator.delete_old_notes(0), timeout=30) == 1

    def test_negative_days_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.delete_old_notes(-1)

    def test_failure_becomes_last_error(self, coordinator, service, days_ago):
        note = service.create_note("old", creation_date=days_ago(60))
        boom = OperationalError("DELETE FROM notes", {}, Exception("disk I/O error"))
        with patch.object(NoteRepository, "delete_by_ids", side_effect=boom):
            with pytest.raises(BulkOperationError) as exc_info:
                coordinator.wait(coordinator.delete_old_notes(30), timeout=30)

        error = exc_info.value
        assert error.operation == "delete_old_notes"
        assert error.failed_ids == [note.id]
        assert coordinator.last_error(OperationKind.DELETE) is error
        assert service.get_note(note.id) is not None

    def test_observers_see_deleted_ids(self, coordinator, service, store, days_ago):
        old = service.create_note("old", creation_date=days_ago(60))
        received = []
        store.subscribe(received.append)
        coordinator.wait(coordinator.delete_old_notes(30), timeout=30)
        assert received[-1].deleted_notes == frozenset({old.id})


class TestSearch:
    """Background search resolved through the primary handle."""

    @pytest.fixture
    def tagged(self, service, days_ago):
        work = service.create_tag("Work")
        notes = [
            service.create_note("Résumé draft", "for work", tag_ids=[work.id],
                                creation_date=days_ago(1)),
            service.create_note("Groceries", "resume shopping", creation_date=days_ago(2)),
            service.create_note("Plan", "nothing", tag_ids=[work.id], creation_date=days_ago(3)),
        ]
        return work, notes

    def test_empty_query_matches_all_newest_first(self, coordinator, tagged):
        _, notes = tagged
        results = coordinator.wait(coordinator.search_notes(""), timeout=30)
        assert [n.id for n in results] == [n.id for n in notes]
        assert all(isinstance(n, Note) for n in results)

    def test_query_and_tag(self, coordinator, tagged):
        work, notes = tagged
        results = coordinator.wait(coordinator.search_notes("resume", work.id), timeout=30)
        assert [n.id for n in results] == [notes[0].id]

        results = coordinator.wait(coordinator.search_notes("RESUME"), timeout=30)
        assert [n.id for n in results] == [notes[0].id, notes[1].id]

    def test_deterministic(self, coordinator, tagged):
        work, _ = tagged
        first = coordinator.wait(coordinator.search_notes("", work.id), timeout=30)
        second = coordinator.wait(coordinator.search_notes("", work.id), timeout=30)
        assert [n.id for n in first] == [n.id for n in second]

    def test_unknown_tag_raises_not_found(self, coordinator, tagged):
        with pytest.raises(TagNotFoundError):
            coordinator.wait(coordinator.search_notes("x", "missing"), timeout=30)
        assert isinstance(coordinator.last_error(OperationKind.SEARCH), TagNotFoundError)

    def test_completion_runs_on_interactive_thread(self, coordinator, tagged):
        seen = []
        interactive = threading.get_ident()

        def done(outcome):
            seen.append((threading.get_ident(), outcome.kind, len(outcome.result)))

        coordinator.wait(coordinator.search_notes("", completion=done), timeout=30)
        assert seen == [(interactive, OperationKind.SEARCH, 3)]


class TestRemoteMerge:
    """Records pushed by a sync collaborator."""

    def test_upserts_and_deletes(self, coordinator, service, store):
        stale = service.create_note("Stale")
        existing = service.create_note("Existing", "old body")
        remote_tag = Tag(id="remote-tag", name="Remote", color="purple")
        changes = RemoteChanges.from_records(
            tags=[remote_tag],
            notes=[
                Note(id="remote-note", title="From elsewhere", tags=[remote_tag]),
                Note(id=existing.id, title="Existing", content="new body"),
            ],
            deleted_note_ids=[stale.id, "never-existed"],
        )

        committed = coordinator.wait(coordinator.merge_remote_changes(changes), timeout=30)

        assert "remote-note" in committed.inserted_notes
        assert stale.id in committed.deleted_notes
        assert service.get_note(stale.id) is None
        assert service.get_note(existing.id).content == "new body"
        assert service.get_note("remote-note").has_tag("remote-tag")
        assert service.get_tag("remote-tag").color == TagColor.PURPLE

    def test_empty_changes(self, coordinator):
        committed = coordinator.wait(coordinator.merge_remote_changes(RemoteChanges()), timeout=30)
        assert committed.is_empty

    def test_unknown_tag_reference_fails_whole_batch(self, coordinator, service):
        changes = RemoteChanges(
            notes=[Note(id="n1", title="x", tags=[Tag(id="ghost", name="Ghost")])]
        )
        with pytest.raises(BulkOperationError) as exc_info:
            coordinator.wait(coordinator.merge_remote_changes(changes), timeout=30)
        assert exc_info.value.operation == "merge_remote_changes"
        assert service.get_note("n1") is None


class TestSchedulingAndStatus:
    """Per-kind serialization, status and queue plumbing."""

    def test_status_starts_idle(self, coordinator):
        for kind in OperationKind:
            assert coordinator.status(kind).state == OperationState.IDLE
            assert coordinator.last_error(kind) is None

    def test_status_running_then_completed(self, coordinator, monkeypatch):
        release = threading.Event()
        started = threading.Event()

        def blocked(days):
            started.set()
            release.wait(10)
            return 7

        monkeypatch.setattr(coordinator, "_run_delete", blocked)
        future = coordinator.delete_old_notes(30)
        assert started.wait(10)
        assert coordinator.status(OperationKind.DELETE).state == OperationState.RUNNING
        release.set()
        assert coordinator.wait(future, timeout=10) == 7
        status = coordinator.status(OperationKind.DELETE)
        assert status.state == OperationState.COMPLETED
        assert status.result == 7
        assert status.finished_at >= status.started_at

    def test_queued_call_reports_running(self, store, monkeypatch):
        release = threading.Event()
        coordinator = TaskCoordinator(store, max_workers=1)
        try:
            monkeypatch.setattr(coordinator, "_run_import", lambda count: release.wait(10))
            first = coordinator.import_sample_notes(1)
            queued = coordinator.delete_old_notes(30)
            assert not queued.done()
            assert coordinator.status(OperationKind.DELETE).state == OperationState.RUNNING
            release.set()
            coordinator.wait(first, timeout=10)
            assert coordinator.wait(queued, timeout=10) == 0
            assert coordinator.status(OperationKind.DELETE).state == OperationState.COMPLETED
        finally:
            coordinator.shutdown()

    def test_same_kind_is_serialized(self, coordinator, monkeypatch):
        active = 0
        peak = 0
        lock = threading.Lock()

        def tracked(days):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
            return 0

        monkeypatch.setattr(coordinator, "_run_delete", tracked)
        futures = [coordinator.delete_old_notes(30) for _ in range(4)]
        for future in futures:
            coordinator.wait(future, timeout=10)
        assert peak == 1

    def test_overlapping_deletes_do_not_double_count(self, coordinator, service, days_ago):
        for i in range(5):
            service.create_note(f"old{i}", creation_date=days_ago(90))
        futures = [coordinator.delete_old_notes(30) for _ in range(2)]
        results = [coordinator.wait(f, timeout=30) for f in futures]
        assert sorted(results) == [0, 5]
        assert service.count_notes() == 0

    def test_results_wait_for_main_queue(self, store):
        queue = MainQueue()
        coordinator = TaskCoordinator(store, main_queue=queue, max_workers=1)
        try:
            future = coordinator.delete_old_notes(30)
            deadline = time.monotonic() + 10
            while queue.pending() == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert not future.done()
            queue.drain()
            assert future.result() == 0
        finally:
            coordinator.shutdown()

    def test_wait_times_out(self, coordinator):
        with pytest.raises(FutureTimeoutError):
            coordinator.wait(Future(), timeout=0.1)

    def test_shutdown_rejects_new_work(self, store):
        coordinator = TaskCoordinator(store, max_workers=1)
        coordinator.shutdown()
        with pytest.raises(RuntimeError):
            coordinator.search_notes("")

    def test_drain_only_on_owner_thread(self):
        queue = MainQueue()
        errors = []

        def from_worker():
            try:
                queue.drain()
            except RuntimeError as e:
                errors.append(e)

        worker = threading.Thread(target=from_worker)
        worker.start()
        worker.join()
        assert len(errors) == 1


class TestUnsavedPrimaryEdits:
    """Background writers proceed while the primary handle holds unsaved work."""

    def test_delete_runs_alongside_unsaved_edit(self, coordinator, service, store, days_ago):
        old = service.create_note("Old", creation_date=days_ago(40))
        keep = service.create_note("Keep", "Body")
        notes = NoteRepository(store.main)
        notes.update(keep.id, title="Editing")
        assert notes.count() == 2

        assert coordinator.wait(coordinator.delete_old_notes(30), timeout=30) == 1
        assert coordinator.last_error(OperationKind.DELETE) is None
        assert notes.get(old.id) is None
        assert notes.get(keep.id).title == "Editing"

        store.main.save()
        with store.open_background() as reader:
            stored = NoteRepository(reader).get(keep.id)
        assert stored.title == "Editing"
        assert stored.content == "Body"

    def test_import_runs_alongside_unsaved_edit(self, coordinator, service, store):
        tag = service.create_tag("Work", "blue")
        keep = service.create_note("Keep", "Body")
        notes = NoteRepository(store.main)
        tags = TagRepository(store.main)
        notes.update(keep.id, title="Editing")
        tags.update(tag.id, name="Renamed")
        assert tags.count() == 1

        assert coordinator.wait(coordinator.import_sample_notes(12), timeout=30) is True
        assert notes.count() == 13
        assert notes.get(keep.id).title == "Editing"
        assert len(tags.get(tag.id).note_ids) == 12

        store.main.save()
        with store.open_background() as reader:
            assert NoteRepository(reader).get(keep.id).title == "Editing"
            assert TagRepository(reader).get(tag.id).name == "Renamed"
            assert NoteRepository(reader).count() == 13
