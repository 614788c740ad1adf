# =============================================================================
# ontime_core/offline/task_service.py
# OfflineTaskService - Single API for Online/Offline Task Operations
# =============================================================================
"""
OfflineTaskService - the only entry point the UI uses for task data.

This service automatically handles:
- Online: direct backend calls, cache refreshed from the answer
- Offline (or transient failure): the action is queued and the cached
  task is patched so the change shows immediately
- Permanent rejections returned straight to the caller
- Storage exhaustion surfaced as a failed result (code STORE_001)

Usage:
------
from ontime_core.offline import get_task_service

service = get_task_service()

result = service.fetch_tasks()
tasks = result.data                          # list of task dicts
from_cache = result.source == "cache"

result = service.update_task_status(task_id, "in_progress")
if result.queued:
    st.info("Saved offline; will sync when back online")
"""

from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from ontime_core.data import RemoteBackend, photo_object_path
from ontime_core.errors import FailureClass, SyncInProgressError, classify_failure
from ontime_core.offline.connection_manager import ConnectivityMonitor
from ontime_core.offline.local_store import LocalStore
from ontime_core.offline.models import (
    PHOTO_TYPES,
    TASK,
    TASK_STATUSES,
    MutationKind,
    entity_key,
)
from ontime_core.offline.sync_engine import SyncReconciler
from ontime_core.services import BaseService, ServiceResult


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OfflineTaskService(BaseService):
    """
    Task operations that keep working without a connection.

    A new action goes straight to the backend only when the device is online
    and nothing is waiting in the queue; otherwise it joins the queue behind
    the earlier actions so replay order is preserved.
    """

    def __init__(
        self,
        store: LocalStore,
        backend: RemoteBackend,
        monitor: ConnectivityMonitor,
        reconciler: Optional[SyncReconciler] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        super().__init__()
        self.store = store
        self.backend = backend
        self.monitor = monitor
        self.reconciler = reconciler
        self.organization_id = organization_id
        self.user_id = user_id

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online()

    @property
    def pending_sync_count(self) -> int:
        return self.store.pending_count()

    @property
    def failed_sync_count(self) -> int:
        return self.store.failed_count()

    def _can_call_directly(self) -> bool:
        return (
            self.monitor.is_online()
            and self.backend.is_connected()
            and self.store.pending_count() == 0
        )

    # =========================================================================
    # READS
    # =========================================================================

    def fetch_tasks(self, assigned_to: Optional[str] = None) -> ServiceResult:
        """
        Fetch tasks from the backend, falling back to the offline cache.

        Returns:
            ok(list of task dicts) with metadata ``source`` of
            ``"remote"`` or ``"cache"``
        """
        if self.monitor.is_online() and self.backend.is_connected():
            try:
                rows = self.backend.fetch_tasks(
                    organization_id=self.organization_id,
                    assigned_to=assigned_to,
                )
            except Exception as e:
                if classify_failure(e) is FailureClass.PERMANENT:
                    self.logger.error(f"Fetching tasks rejected: {e}")
                    return ServiceResult.from_exception(e)
                self.logger.warning(f"Fetching tasks failed, using cache: {e}")
            else:
                cached = self.store.put_cached_entities(TASK, rows)
                if not cached:
                    self.logger.warning(f"Fetched tasks not cached: {cached.error}")
                self._overlay_pending()
                return ServiceResult.ok(self._cached_tasks(), metadata={"source": "remote"})

        tasks = self._cached_tasks()
        return ServiceResult.ok(tasks, metadata={"source": "cache", "empty": not tasks})

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Cached snapshot of one task (None if unknown or stale)."""
        entity = self.store.get_cached_entity(TASK, task_id)
        return entity.payload if entity else None

    def _cached_tasks(self) -> List[Dict[str, Any]]:
        tasks = [entity.payload for entity in self.store.get_cached_entities(TASK)]
        return sorted(tasks, key=lambda task: task.get("created_at") or "", reverse=True)

    def _overlay_pending(self) -> None:
        """Re-apply queued edits on top of a fresh fetch so they stay visible."""
        for mutation in self.store.list_pending_mutations():
            payload = mutation.payload
            if mutation.kind is MutationKind.UPDATE_TASK_STATUS:
                self.store.patch_cached_entity(
                    TASK, payload["task_id"], self._status_changes(payload["status"])
                )
            elif mutation.kind is MutationKind.CREATE_TASK:
                if self.store.get_cached_entity(TASK, payload["task"]["id"]) is None:
                    self.store.refresh_cached_entity(TASK, self._local_copy(payload["task"]))

    # =========================================================================
    # WRITES
    # =========================================================================

    @staticmethod
    def _status_changes(status: str) -> Dict[str, Any]:
        return {
            "status": status,
            "completed_at": _utc_now() if status == "completed" else None,
        }

    @staticmethod
    def _local_copy(task: Dict[str, Any]) -> Dict[str, Any]:
        local = dict(task)
        local.setdefault("created_at", _utc_now())
        return local

    def update_task_status(
        self,
        task_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        """
        Change a task's status (pending, in_progress, completed).

        Returns:
            ok(task dict) with metadata ``queued`` telling whether the change
            is waiting for connectivity
        """
        if status not in TASK_STATUSES:
            return ServiceResult.fail(
                f"Invalid status '{status}'; expected one of {', '.join(TASK_STATUSES)}",
                error_code="TASK_001",
            )

        # The guard only needs the last known version, however old the snapshot
        cached = self.store.get_cached_entity(TASK, task_id, include_stale=True)
        # An earlier queued write to the same task will move its version; only
        # the first write in a chain is guarded. The reconciler fails the rest
        # of the chain if that first write is rejected
        expected = None
        if cached is not None and not self._has_pending_for(task_id):
            expected = cached.payload.get("updated_at")

        payload = {
            "task_id": task_id,
            "status": status,
            "notes": notes,
            "expected_updated_at": expected,
            "changed_by": self.user_id,
        }

        def optimistic() -> Dict[str, Any]:
            patched = self.store.patch_cached_entity(TASK, task_id, self._status_changes(status))
            return patched.data or {"id": task_id, "status": status}

        return self._submit(
            MutationKind.UPDATE_TASK_STATUS,
            payload,
            remote_call=lambda: self.backend.update_task_status(
                task_id=task_id,
                status=status,
                notes=notes,
                expected_updated_at=expected,
                changed_by=self.user_id,
            ),
            entity_type=TASK,
            optimistic=optimistic,
        )

    def create_task(self, fields: Dict[str, Any]) -> ServiceResult:
        """
        Create a task.

        The id is assigned here when missing, so photos queued right after a
        queued create already point at the right task.
        """
        task = dict(fields)
        if not task.get("title"):
            return ServiceResult.fail("A task needs a title", error_code="TASK_002")

        task.setdefault("id", str(uuid.uuid4()))
        task.setdefault("status", "pending")
        if task["status"] not in TASK_STATUSES:
            return ServiceResult.fail(f"Invalid status '{task['status']}'", error_code="TASK_001")
        if self.organization_id and not task.get("organization_id"):
            task["organization_id"] = self.organization_id
        if self.user_id and not task.get("created_by"):
            task["created_by"] = self.user_id

        def optimistic() -> Dict[str, Any]:
            local = self._local_copy(task)
            self.store.refresh_cached_entity(TASK, local)
            return local

        return self._submit(
            MutationKind.CREATE_TASK,
            {"task": task},
            remote_call=lambda: self.backend.create_task(task),
            entity_type=TASK,
            optimistic=optimistic,
        )

    def upload_photo(
        self,
        task_id: str,
        content: bytes,
        filename: str,
        photo_type: str = "progress",
        location: Optional[Dict[str, float]] = None,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        """Attach a check-in, progress or completion photo to a task."""
        if photo_type not in PHOTO_TYPES:
            return ServiceResult.fail(
                f"Invalid photo type '{photo_type}'; expected one of {', '.join(PHOTO_TYPES)}",
                error_code="TASK_003",
            )
        if not content:
            return ServiceResult.fail("Photo is empty", error_code="TASK_004")

        taken_at = _utc_now()
        object_path = photo_object_path(task_id, filename)

        def remote_call() -> Dict[str, Any]:
            return self.backend.upload_photo(
                task_id=task_id,
                content=content,
                filename=filename,
                photo_type=photo_type,
                location=location,
                notes=notes,
                taken_at=taken_at,
                object_path=object_path,
            )

        if self._can_call_directly():
            direct = self._call_remote(MutationKind.UPLOAD_PHOTO, remote_call, "photo")
            if direct is not None:
                return direct

        saved = self.store.save_blob(content, filename)
        if not saved:
            return saved

        payload = {
            "task_id": task_id,
            "blob_ref": saved.data,
            "filename": filename,
            "photo_type": photo_type,
            "location": location,
            "notes": notes,
            "taken_at": taken_at,
            "object_path": object_path,
        }
        queued = self._enqueue(
            MutationKind.UPLOAD_PHOTO,
            payload,
            optimistic=lambda: {"task_id": task_id, "type": photo_type, "pending": True},
        )
        if not queued:
            self.store.delete_blob(saved.data)
        return queued

    # =========================================================================
    # ONLINE / QUEUED SPLIT
    # =========================================================================

    def _has_pending_for(self, task_id: str) -> bool:
        key = entity_key(TASK, task_id)
        return any(m.target == key for m in self.store.list_pending_mutations())

    def _call_remote(
        self,
        kind: MutationKind,
        remote_call: Callable[[], Dict[str, Any]],
        entity_type: str,
    ) -> Optional[ServiceResult]:
        """
        Try the backend directly.

        Returns:
            The final result, or None when the failure was transient and the
            action should be queued instead
        """
        try:
            row = remote_call()
        except Exception as e:
            if classify_failure(e) is FailureClass.PERMANENT:
                self.logger.warning(f"{kind.value} rejected: {e}")
                return ServiceResult.from_exception(e)
            self.logger.info(f"{kind.value} failed transiently, queueing: {e}")
            return None

        if row and row.get("id") is not None:
            self.store.refresh_cached_entity(entity_type, row)
        return ServiceResult.ok(row, metadata={"queued": False})

    def _submit(
        self,
        kind: MutationKind,
        payload: Dict[str, Any],
        remote_call: Callable[[], Dict[str, Any]],
        entity_type: str,
        optimistic: Callable[[], Dict[str, Any]],
    ) -> ServiceResult:
        if self._can_call_directly():
            direct = self._call_remote(kind, remote_call, entity_type)
            if direct is not None:
                return direct
        return self._enqueue(kind, payload, optimistic)

    def _enqueue(
        self,
        kind: MutationKind,
        payload: Dict[str, Any],
        optimistic: Callable[[], Dict[str, Any]],
    ) -> ServiceResult:
        queued = self.store.enqueue_mutation(kind, payload)
        if not queued:
            # STORE_001 reaches the caller unchanged
            return queued

        local = optimistic()
        if self.reconciler is not None and self.monitor.is_online():
            self.reconciler.trigger()

        return ServiceResult.ok(local, metadata={"queued": True, "mutation_id": queued.data})

    # =========================================================================
    # SYNC MANAGEMENT
    # =========================================================================

    def retry_sync(self) -> ServiceResult:
        """User-initiated drain of the queue."""
        if self.reconciler is None:
            return ServiceResult.fail("Sync is not available", error_code="SYNC_004")

        with self.log_operation("User-initiated sync"):
            return self.safe_execute("Retry sync", self._drain_now)

    def _drain_now(self) -> Dict[str, Any]:
        report = self.reconciler.sync_now()
        if report is None:
            raise SyncInProgressError()
        return report.to_dict()

    def list_failed(self) -> List[Dict[str, Any]]:
        """Failed mutations awaiting retry or discard."""
        return [m.to_dict() for m in self.store.list_failed_mutations()]

    def retry_failed(self, mutation_id: int) -> ServiceResult:
        """Send a failed mutation back to the queue."""
        result = self.store.retry_failed(mutation_id)
        if result and self.reconciler is not None and self.monitor.is_online():
            self.reconciler.trigger()
        return result

    def discard_failed(self, mutation_id: int) -> ServiceResult:
        """Drop a failed mutation after the user acknowledged it."""
        mutation = self.store.get_mutation(mutation_id)
        result = self.store.discard_mutation(mutation_id)
        if result and mutation is not None and mutation.kind is not MutationKind.UPLOAD_PHOTO:
            # The optimistic patch is now wrong; let the next read refetch
            task_id = mutation.payload.get("task_id") or mutation.payload.get("task", {}).get("id")
            if task_id:
                self.store.invalidate_cached_entity(TASK, task_id)
        return result

    def queue_frame(self) -> pd.DataFrame:
        return self.store.pending_mutations_frame()

    def get_status_display(self) -> Dict[str, Any]:
        """Combined connectivity and sync status for UI display."""
        status = {
            "connection": self.monitor.get_status_display(),
            "pending": self.store.pending_count(),
            "failed": self.store.failed_count(),
            "remote_configured": self.backend.is_connected(),
        }
        if self.reconciler is not None:
            status["sync"] = self.reconciler.get_status_display()
        return status


# Singleton accessor
_task_service: Optional[OfflineTaskService] = None


def get_task_service() -> OfflineTaskService:
    """
    Get the global OfflineTaskService.

    First call wires the store, backend, monitor and reconciler from settings
    and starts monitoring and auto-sync.
    """
    global _task_service
    if _task_service is None:
        from ontime_core.config import get_settings
        from ontime_core.data import get_supabase_backend
        from ontime_core.offline.connection_manager import get_connectivity_monitor
        from ontime_core.offline.local_store import get_local_store
        from ontime_core.offline.sync_engine import get_sync_reconciler

        settings = get_settings()
        _task_service = OfflineTaskService(
            store=get_local_store(),
            backend=get_supabase_backend(),
            monitor=get_connectivity_monitor(),
            reconciler=get_sync_reconciler(),
            organization_id=settings.organization_id,
            user_id=settings.user_id,
        )
    return _task_service
