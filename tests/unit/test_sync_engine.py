# =============================================================================
# tests/unit/test_sync_engine.py
# Unit Tests for SyncReconciler
# =============================================================================

import sqlite3
import threading

import pytest

from ontime_core.errors import TransientSyncError
from ontime_core.offline.models import MutationKind
from ontime_core.offline.notifications import NotificationKind
from ontime_core.offline.sync_engine import DrainOutcome, ReconcilerState, SyncReconciler


@pytest.fixture
def reconciler(store, backend, monitor, dispatcher):
    monitor.report(True)
    return SyncReconciler(store, backend, monitor, dispatcher, max_attempts=3)


def _queue_status(store, clock, task_id, status="in_progress"):
    mutation_id = store.enqueue_mutation(
        MutationKind.UPDATE_TASK_STATUS,
        {"task_id": task_id, "status": status, "notes": None},
    ).data
    clock.advance(seconds=1)
    return mutation_id


def _called_tasks(backend):
    return [call[1] for call in backend.calls]


class TestDrainOrder:

    def test_fifo_order(self, reconciler, store, backend, clock):
        """Mutation 1 reaches the backend before 2, before 3"""
        for task_id in ("t1", "t2", "t3"):
            backend.seed_task(task_id)
            _queue_status(store, clock, task_id)

        report = reconciler.sync_now()

        assert _called_tasks(backend) == ["t1", "t2", "t3"]
        assert report.outcome is DrainOutcome.COMPLETED
        assert report.synced == 3
        assert store.list_pending_mutations() == []

    def test_success_refreshes_cached_entity(self, reconciler, store, backend, clock):
        backend.seed_task("t1")
        store.put_cached_entities("task", [{"id": "t1", "status": "pending"}])
        _queue_status(store, clock, "t1", "completed")

        reconciler.sync_now()

        cached = store.get_cached_entity("task", "t1")
        assert cached.payload["status"] == "completed"
        assert cached.payload["updated_at"] == backend.tasks["t1"]["updated_at"]

    def test_empty_queue_completes_quietly(self, reconciler, inbox):
        report = reconciler.sync_now()

        assert report.outcome is DrainOutcome.COMPLETED
        assert report.synced == 0
        assert len(inbox) == 0


class TestFailureHandling:

    def test_transient_failure_halts_cycle(self, reconciler, store, backend, clock):
        """#2 fails transiently, so #3 is not attempted"""
        for task_id in ("t1", "t2", "t3"):
            backend.seed_task(task_id)
        first = _queue_status(store, clock, "t1")
        second = _queue_status(store, clock, "t2")
        _queue_status(store, clock, "t3")
        original = backend.update_task_status

        def flaky(task_id, *args, **kwargs):
            if task_id == "t2":
                backend.calls.append(("update_task_status", task_id, "timeout"))
                raise TransientSyncError("timed out")
            return original(task_id, *args, **kwargs)

        backend.update_task_status = flaky

        report = reconciler.sync_now()

        assert _called_tasks(backend) == ["t1", "t2"]
        assert report.outcome is DrainOutcome.PAUSED
        assert report.halted_on == second
        assert report.remaining == 2
        assert store.get_mutation(first) is None
        assert store.get_mutation(second).attempts == 1

    def test_permanent_failure_continues(self, reconciler, store, backend, clock, inbox):
        """#2 fails permanently, #3 is still attempted"""
        backend.seed_task("t1")
        backend.seed_task("t3")
        _queue_status(store, clock, "t1")
        second = _queue_status(store, clock, "t2")  # unknown to the server
        _queue_status(store, clock, "t3")

        report = reconciler.sync_now()

        assert _called_tasks(backend) == ["t1", "t2", "t3"]
        assert report.outcome is DrainOutcome.PARTIALLY_FAILED
        assert report.synced == 2
        assert report.failed == 1
        assert [m.id for m in store.list_failed_mutations()] == [second]

        kinds = [n.kind for n in inbox.drain()]
        assert kinds == [NotificationKind.ITEM_FAILED, NotificationKind.SYNC_PARTIALLY_FAILED]

    def test_attempt_limit_moves_to_failed(self, reconciler, store, backend, clock, inbox):
        backend.seed_task("t1")
        mutation_id = _queue_status(store, clock, "t1")
        backend.fail("update_task_status", *[TransientSyncError("timed out")] * 3)

        for _ in range(3):
            report = reconciler.sync_now()
            assert report.outcome is DrainOutcome.PAUSED

        failed = store.get_mutation(mutation_id)
        assert failed.attempts == 3
        assert failed.status.value == "failed"
        assert "Gave up after 3 attempts" in failed.last_error
        assert [n.kind for n in inbox.drain()] == [NotificationKind.ITEM_FAILED]

    def test_changes_after_a_conflict_stay_in_failed(self, reconciler, store, backend, clock, inbox):
        """A second offline edit to t1 never overwrites another device's write"""
        task = backend.seed_task("t1")
        backend.seed_task("t2")
        first = store.enqueue_mutation(MutationKind.UPDATE_TASK_STATUS, {
            "task_id": "t1", "status": "in_progress", "expected_updated_at": task["updated_at"],
        }).data
        clock.advance(seconds=1)
        second = _queue_status(store, clock, "t1", "completed")
        _queue_status(store, clock, "t2")
        backend.update_task_status("t1", "pending")
        backend.calls.clear()

        report = reconciler.sync_now()

        assert backend.tasks["t1"]["status"] == "pending"
        assert _called_tasks(backend) == ["t1", "t2"]
        assert report.synced == 1
        assert report.failed == 2
        assert report.outcome is DrainOutcome.PARTIALLY_FAILED
        assert [m.id for m in store.list_failed_mutations()] == [first, second]
        assert f"Waiting on failed change {first}" in store.get_mutation(second).last_error
        kinds = [n.kind for n in inbox.drain()]
        assert kinds.count(NotificationKind.ITEM_FAILED) == 2

    def test_failed_change_holds_back_later_cycles(self, reconciler, store, backend, clock):
        backend.seed_task("t1")
        first = _queue_status(store, clock, "t1")
        store.mark_failed(first, "Task t1 was changed on another device")
        later = _queue_status(store, clock, "t1", "completed")

        report = reconciler.sync_now()

        assert backend.calls == []
        assert report.failed == 1
        assert store.get_mutation(later).status.value == "failed"

        store.discard_mutation(first)
        store.retry_failed(later)
        assert reconciler.sync_now().synced == 1
        assert backend.tasks["t1"]["status"] == "completed"

    def test_photo_retry_writes_same_object(self, reconciler, store, backend):
        blob_ref = store.save_blob(b"jpeg", "site.jpg").data
        store.enqueue_mutation(MutationKind.UPLOAD_PHOTO, {
            "task_id": "t1", "blob_ref": blob_ref, "filename": "site.jpg",
            "photo_type": "checkin", "object_path": "tasks/t1/1709283600000-site.jpg",
        })
        backend.fail("upload_photo", TransientSyncError("timed out"))

        reconciler.sync_now()
        reconciler.sync_now()

        assert backend.uploaded_paths == ["tasks/t1/1709283600000-site.jpg"] * 2
        assert len(backend.photos) == 1

    def test_unclassified_error_counts_as_transient(self, reconciler, store, backend, clock):
        backend.seed_task("t1")
        mutation_id = _queue_status(store, clock, "t1")
        backend.fail("update_task_status", RuntimeError("weird"))

        report = reconciler.sync_now()

        assert report.outcome is DrainOutcome.PAUSED
        assert store.get_mutation(mutation_id).attempts == 1

    def test_missing_photo_blob_is_permanent(self, reconciler, store, backend):
        mutation_id = store.enqueue_mutation(
            MutationKind.UPLOAD_PHOTO,
            {"task_id": "t1", "blob_ref": "gone.jpg", "filename": "gone.jpg"},
        ).data

        report = reconciler.sync_now()

        assert report.outcome is DrainOutcome.PARTIALLY_FAILED
        assert store.get_mutation(mutation_id).status.value == "failed"
        assert backend.calls == []


class TestStorageErrors:

    @pytest.fixture
    def unreadable_queue(self, store, monkeypatch):
        def broken():
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "list_pending_mutations", broken)

    def test_drain_reports_paused(self, reconciler, unreadable_queue, inbox):
        report = reconciler.sync_now()

        assert report.outcome is DrainOutcome.PAUSED
        assert "disk I/O error" in report.error
        assert reconciler.state.state is ReconcilerState.IDLE
        assert reconciler.state.last_report is report
        assert len(inbox) == 0

    def test_background_drain_survives(self, reconciler, unreadable_queue):
        assert reconciler.trigger()
        assert reconciler.wait_idle(timeout=5)

        assert reconciler.state.last_report.outcome is DrainOutcome.PAUSED
        assert not reconciler.is_draining
        assert reconciler.trigger()
        assert reconciler.wait_idle(timeout=5)


class TestConnectivity:

    def test_offline_pauses_before_first_item(self, reconciler, store, backend, monitor, clock):
        backend.seed_task("t1")
        _queue_status(store, clock, "t1")
        monitor.force_offline()

        report = reconciler.sync_now()

        assert report.outcome is DrainOutcome.PAUSED
        assert report.remaining == 1
        assert backend.calls == []

    def test_going_offline_mid_drain_stops_after_current_item(
        self, reconciler, store, backend, monitor, clock
    ):
        for task_id in ("t1", "t2"):
            backend.seed_task(task_id)
            _queue_status(store, clock, task_id)
        original = backend.update_task_status

        def drop_connection(task_id, *args, **kwargs):
            row = original(task_id, *args, **kwargs)
            monitor.force_offline()
            return row

        backend.update_task_status = drop_connection

        report = reconciler.sync_now()

        assert report.outcome is DrainOutcome.PAUSED
        assert report.synced == 1
        assert [m.payload["task_id"] for m in store.list_pending_mutations()] == ["t2"]

    def test_online_transition_triggers_drain(self, store, backend, monitor, dispatcher, clock):
        backend.seed_task("t1")
        _queue_status(store, clock, "t1")
        monitor.report(False)
        reconciler = SyncReconciler(store, backend, monitor, dispatcher)
        reconciler.start()

        monitor.report(True)
        assert reconciler.wait_idle(timeout=5)

        assert store.pending_count() == 0
        reconciler.stop()
        assert monitor.subscriber_count == 0

    def test_start_while_online_drains_leftovers(self, store, backend, monitor, dispatcher, clock):
        backend.seed_task("t1")
        _queue_status(store, clock, "t1")
        monitor.report(True)
        reconciler = SyncReconciler(store, backend, monitor, dispatcher)

        reconciler.start()
        assert reconciler.wait_idle(timeout=5)

        assert store.pending_count() == 0
        reconciler.stop()


class TestMutualExclusion:

    def test_second_drain_is_refused_while_first_runs(self, reconciler, store, backend, clock):
        backend.seed_task("t1")
        _queue_status(store, clock, "t1")
        entered = threading.Event()
        release = threading.Event()
        original = backend.update_task_status

        def slow(*args, **kwargs):
            entered.set()
            release.wait(timeout=5)
            return original(*args, **kwargs)

        backend.update_task_status = slow

        assert reconciler.trigger()
        assert entered.wait(timeout=5)
        assert reconciler.is_draining
        assert reconciler.sync_now() is None
        assert reconciler.trigger() is False

        release.set()
        assert reconciler.wait_idle(timeout=5)
        assert reconciler.state.state is ReconcilerState.IDLE
        assert len(backend.calls) == 1


class TestNotificationsAndStatus:

    def test_completed_notification_counts(self, reconciler, store, backend, clock, inbox):
        for task_id in ("t1", "t2"):
            backend.seed_task(task_id)
            _queue_status(store, clock, task_id)

        reconciler.sync_now()

        notifications = inbox.drain()
        assert [n.kind for n in notifications] == [NotificationKind.SYNC_COMPLETED]
        assert notifications[0].details["synced"] == 2

    def test_callbacks_see_state_changes(self, reconciler):
        states = []
        reconciler.register_callback(lambda state: states.append(state.state))

        reconciler.sync_now()

        assert states == [ReconcilerState.DRAINING, ReconcilerState.IDLE]

    def test_status_display(self, reconciler, store, backend, clock):
        backend.seed_task("t1")
        _queue_status(store, clock, "t1")
        reconciler.sync_now()

        display = reconciler.get_status_display()

        assert display["state"] == "idle"
        assert display["pending"] == 0
        assert display["last_outcome"] == "completed"
        assert display["total_synced"] == 1

    def test_create_then_photo_in_order(self, reconciler, store, backend, clock):
        """A photo queued after a queued create reaches the server second"""
        store.enqueue_mutation(MutationKind.CREATE_TASK, {"task": {"id": "new-1", "title": "Fix pump"}})
        clock.advance(seconds=1)
        blob_ref = store.save_blob(b"jpeg", "pump.jpg").data
        store.enqueue_mutation(MutationKind.UPLOAD_PHOTO, {
            "task_id": "new-1", "blob_ref": blob_ref, "filename": "pump.jpg", "photo_type": "checkin",
        })

        report = reconciler.sync_now()

        assert report.synced == 2
        assert [call[0] for call in backend.calls] == ["create_task", "upload_photo"]
        assert store.read_blob(blob_ref) is None
        assert store.get_cached_entity("task", "new-1") is not None
        assert store.get_cached_entity("photo", "photo-1").payload["task_id"] == "new-1"
