# =============================================================================
# ontime_core/offline/sync_engine.py
# Queue Draining and Cache Reconciliation
# =============================================================================
"""
SyncReconciler - replays queued mutations against the remote backend.

Features:
- One drain cycle at a time (Idle -> Draining -> outcome -> Idle)
- Strict creation-order replay; a transient failure halts the cycle
- Permanent failures move the item to Failed and the cycle continues
- Later changes to an entity with a Failed change are held in Failed too
- Local storage errors end the cycle as paused instead of escaping
- Attempt limit after which an item is moved to Failed
- Cached entity refreshed from the server's answer after each success
- Outcome counts reported to the notification dispatcher
"""

from __future__ import annotations
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ontime_core.data import RemoteBackend
from ontime_core.errors import (
    FailureClass,
    PermanentSyncError,
    StorageError,
    classify_failure,
    handle_error,
)
from ontime_core.logging import get_logger, LogContext
from ontime_core.offline.connection_manager import ConnectivityMonitor, Subscription
from ontime_core.offline.local_store import LocalStore
from ontime_core.offline.models import PHOTO, TASK, MutationKind, MutationStatus, PendingMutation
from ontime_core.offline.notifications import NotificationDispatcher, NotificationKind

logger = get_logger(__name__)


class ReconcilerState(Enum):
    IDLE = "idle"
    DRAINING = "draining"


class DrainOutcome(Enum):
    COMPLETED = "completed"                 # queue empty, nothing in Failed
    PARTIALLY_FAILED = "partially_failed"   # queue empty, items waiting in Failed
    PAUSED = "paused"                       # stopped early: offline, transient failure, storage error


class _ItemResult(Enum):
    SYNCED = "synced"
    FAILED = "failed"
    HALT = "halt"


@dataclass
class DrainReport:
    """Summary of one drain cycle."""
    outcome: DrainOutcome
    synced: int = 0
    failed: int = 0
    remaining: int = 0
    awaiting_attention: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    halted_on: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "synced": self.synced,
            "failed": self.failed,
            "remaining": self.remaining,
            "awaiting_attention": self.awaiting_attention,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "halted_on": self.halted_on,
            "error": self.error,
        }


@dataclass
class SyncState:
    """Current reconciler state."""
    state: ReconcilerState = ReconcilerState.IDLE
    last_drain: Optional[datetime] = None
    last_report: Optional[DrainReport] = None
    total_synced: int = 0


class SyncReconciler:
    """
    Drains the pending mutation queue when connectivity returns.

    Usage:
        reconciler = SyncReconciler(store, backend, monitor, dispatcher)
        reconciler.start()          # drain on every debounced online transition
        report = reconciler.sync_now()  # user-initiated "retry sync"
    """

    MAX_ATTEMPTS = 5

    def __init__(
        self,
        store: LocalStore,
        backend: RemoteBackend,
        monitor: ConnectivityMonitor,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_attempts: Optional[int] = None,
        changed_by: Optional[str] = None,
    ):
        """
        Args:
            store: Owner of the queue and the entity cache
            backend: Remote backend the mutations are replayed against
            monitor: Connectivity source; checked before every item
            dispatcher: Receives outcome notifications (optional)
            max_attempts: Transient failures tolerated before an item is Failed
            changed_by: User id recorded in status history when the payload has none
        """
        self.store = store
        self.backend = backend
        self.monitor = monitor
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts or self.MAX_ATTEMPTS
        self.changed_by = changed_by

        self._state = SyncState()
        self._drain_lock = threading.Lock()
        self._drain_thread: Optional[threading.Thread] = None
        self._subscription: Optional[Subscription] = None
        self._callbacks: List[Callable[[SyncState], None]] = []

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_draining(self) -> bool:
        return self._state.state == ReconcilerState.DRAINING

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Subscribe to connectivity; each committed online transition starts a drain."""
        if self._subscription is not None and self._subscription.active:
            return
        self._subscription = self.monitor.on_change(self._on_connectivity_change)
        logger.info("SyncReconciler started")

        if self.monitor.is_online() and self.store.pending_count():
            self.trigger()

    def stop(self, timeout: float = 10.0) -> None:
        """Unsubscribe and wait for an in-flight drain to finish."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self.wait_idle(timeout)
        logger.info("SyncReconciler stopped")

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Connection restored, triggering sync")
            self.trigger()

    def trigger(self) -> bool:
        """
        Start a drain on a background thread.

        Returns:
            False if a drain is already running
        """
        if self._drain_lock.locked():
            logger.debug("Drain already in progress; trigger ignored")
            return False

        self._drain_thread = threading.Thread(
            target=self.drain,
            daemon=True,
            name="SyncReconciler",
        )
        self._drain_thread.start()
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the background drain (if any) finishes."""
        thread = self._drain_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
            return not thread.is_alive()
        return True

    def sync_now(self) -> Optional[DrainReport]:
        """User-initiated drain on the calling thread; None if one is already running."""
        return self.drain()

    # =========================================================================
    # DRAIN CYCLE
    # =========================================================================

    def drain(self) -> Optional[DrainReport]:
        """
        Run one drain cycle.

        Returns:
            DrainReport, or None when another cycle holds the in-flight flag
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress")
            return None

        started_at = datetime.now()
        try:
            self._state.state = ReconcilerState.DRAINING
            self._notify_callbacks()
            try:
                with LogContext(logger, "Draining mutation queue"):
                    report = self._drain_cycle(started_at)
            except (StorageError, sqlite3.Error) as e:
                report = self._storage_failure_report(e, started_at)

            self._state.last_drain = report.finished_at
            self._state.last_report = report
            self._state.total_synced += report.synced
        finally:
            self._state.state = ReconcilerState.IDLE
            self._drain_lock.release()
            self._notify_callbacks()

        self._report(report)
        return report

    def _storage_failure_report(self, error: Exception, started_at: datetime) -> DrainReport:
        if not isinstance(error, StorageError):
            error = StorageError(f"Local queue unavailable: {error}", table="pending_mutations")
        handle_error(error)
        return DrainReport(
            outcome=DrainOutcome.PAUSED,
            started_at=started_at,
            finished_at=datetime.now(),
            error=error.message,
        )

    def _drain_cycle(self, started_at: Optional[datetime] = None) -> DrainReport:
        report = DrainReport(outcome=DrainOutcome.COMPLETED, started_at=started_at or datetime.now())
        seen: Set[int] = set()
        paused = False

        # Entity key -> id of its earliest Failed change. Queued changes made
        # after it were built on top of it and must not reach the server alone
        blocked: Dict[str, int] = {}
        for failed in self.store.list_failed_mutations():
            blocked.setdefault(failed.target, failed.id)

        while not paused:
            batch = [m for m in self.store.list_pending_mutations() if m.id not in seen]
            if not batch:
                break

            for mutation in batch:
                if not self.monitor.is_online():
                    logger.info("Went offline during drain; pausing")
                    paused = True
                    break

                seen.add(mutation.id)
                blocker = blocked.get(mutation.target)
                if blocker is not None and blocker < mutation.id:
                    self._move_to_failed(
                        mutation, f"Waiting on failed change {blocker} to {mutation.target}"
                    )
                    report.failed += 1
                    continue

                result = self._process(mutation)
                if result is _ItemResult.SYNCED:
                    report.synced += 1
                    continue

                if result is _ItemResult.FAILED:
                    report.failed += 1
                else:
                    report.halted_on = mutation.id
                    paused = True

                current = self.store.get_mutation(mutation.id)
                if current is not None and current.status is MutationStatus.FAILED:
                    blocked.setdefault(mutation.target, mutation.id)
                if paused:
                    break

        report.remaining = self.store.pending_count()
        report.awaiting_attention = self.store.failed_count()
        report.finished_at = datetime.now()
        if paused:
            report.outcome = DrainOutcome.PAUSED
        elif report.awaiting_attention > 0:
            report.outcome = DrainOutcome.PARTIALLY_FAILED

        logger.info(
            f"Drain {report.outcome.value}: {report.synced} synced, "
            f"{report.failed} failed, {report.remaining} pending"
        )
        return report

    def _process(self, mutation: PendingMutation) -> _ItemResult:
        try:
            entity_type, row = self._dispatch(mutation)
        except Exception as e:
            return self._handle_failure(mutation, e)

        removed = self.store.remove_mutation(mutation.id)
        if not removed:
            # Remote write is done but the queue still holds it; replaying would duplicate
            logger.error(f"Synced mutation {mutation.id} could not be removed: {removed.error}")
            return _ItemResult.HALT

        self._reconcile_cache(mutation, entity_type, row)
        logger.info(f"Synced {mutation.kind.value} ({mutation.target})")
        return _ItemResult.SYNCED

    def _dispatch(self, mutation: PendingMutation) -> Tuple[str, Optional[Dict[str, Any]]]:
        payload = mutation.payload

        if mutation.kind is MutationKind.UPDATE_TASK_STATUS:
            row = self.backend.update_task_status(
                task_id=payload["task_id"],
                status=payload["status"],
                notes=payload.get("notes"),
                expected_updated_at=payload.get("expected_updated_at"),
                changed_by=payload.get("changed_by") or self.changed_by,
            )
            return TASK, row

        if mutation.kind is MutationKind.CREATE_TASK:
            return TASK, self.backend.create_task(payload["task"])

        if mutation.kind is MutationKind.UPLOAD_PHOTO:
            content = self.store.read_blob(payload["blob_ref"])
            if content is None:
                raise PermanentSyncError(
                    "Photo data is no longer on this device",
                    operation="upload_photo",
                    entity=payload.get("task_id"),
                )
            row = self.backend.upload_photo(
                task_id=payload["task_id"],
                content=content,
                filename=payload.get("filename", "photo.jpg"),
                photo_type=payload.get("photo_type", "progress"),
                location=payload.get("location"),
                notes=payload.get("notes"),
                taken_at=payload.get("taken_at"),
                object_path=payload.get("object_path"),
            )
            return PHOTO, row

        raise PermanentSyncError(f"Unsupported mutation kind: {mutation.kind}")

    def _handle_failure(self, mutation: PendingMutation, error: Exception) -> _ItemResult:
        message = getattr(error, "message", None) or str(error)

        if classify_failure(error) is FailureClass.PERMANENT:
            logger.warning(f"Mutation {mutation.id} rejected: {message}")
            self._move_to_failed(mutation, message)
            return _ItemResult.FAILED

        marked = self.store.mark_attempt(mutation.id, message)
        attempts = marked.data if marked else mutation.attempts + 1
        logger.warning(
            f"Mutation {mutation.id} failed transiently "
            f"(attempt {attempts}/{self.max_attempts}): {message}"
        )
        if attempts >= self.max_attempts:
            self._move_to_failed(mutation, f"Gave up after {attempts} attempts: {message}")
        return _ItemResult.HALT

    def _move_to_failed(self, mutation: PendingMutation, message: str) -> None:
        self.store.mark_failed(mutation.id, message)
        if self.dispatcher is not None:
            self.dispatcher.notify(NotificationKind.ITEM_FAILED, {
                "mutation_id": mutation.id,
                "kind": mutation.kind.value,
                "target": mutation.target,
                "error": message,
            })

    def _reconcile_cache(
        self,
        mutation: PendingMutation,
        entity_type: str,
        row: Optional[Dict[str, Any]],
    ) -> None:
        if row and row.get("id") is not None:
            self.store.refresh_cached_entity(entity_type, row)
            return

        # No authoritative snapshot came back; force the next read to the network
        task_id = mutation.payload.get("task_id") or mutation.payload.get("task", {}).get("id")
        if task_id:
            self.store.invalidate_cached_entity(TASK, task_id)

    def _report(self, report: DrainReport) -> None:
        if self.dispatcher is None or report.outcome is DrainOutcome.PAUSED:
            return
        if report.synced == 0 and report.failed == 0:
            return

        if report.outcome is DrainOutcome.COMPLETED:
            self.dispatcher.notify(NotificationKind.SYNC_COMPLETED, {"synced": report.synced})
        else:
            self.dispatcher.notify(NotificationKind.SYNC_PARTIALLY_FAILED, {
                "synced": report.synced,
                "failed": report.awaiting_attention,
            })

    # =========================================================================
    # CALLBACKS & STATUS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Register a callback for reconciler state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in self._callbacks:
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> dict:
        """Status information for UI display."""
        last = self._state.last_report
        return {
            "state": self._state.state.value,
            "is_draining": self.is_draining,
            "pending": self.store.pending_count(),
            "failed": self.store.failed_count(),
            "last_drain": self._state.last_drain.isoformat() if self._state.last_drain else None,
            "last_outcome": last.outcome.value if last else None,
            "total_synced": self._state.total_synced,
        }


# Singleton accessor
_sync_reconciler: Optional[SyncReconciler] = None


def get_sync_reconciler(start: bool = True) -> SyncReconciler:
    """Get the global SyncReconciler wired to the global components."""
    global _sync_reconciler
    if _sync_reconciler is None:
        from ontime_core.config import get_settings
        from ontime_core.data import get_supabase_backend
        from ontime_core.offline.connection_manager import get_connectivity_monitor
        from ontime_core.offline.local_store import get_local_store
        from ontime_core.offline.notifications import get_notification_dispatcher

        settings = get_settings()
        _sync_reconciler = SyncReconciler(
            store=get_local_store(),
            backend=get_supabase_backend(),
            monitor=get_connectivity_monitor(),
            dispatcher=get_notification_dispatcher(),
            max_attempts=settings.max_attempts,
        )
        if start:
            _sync_reconciler.start()
    return _sync_reconciler
