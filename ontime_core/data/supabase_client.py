# =============================================================================
# ontime_core/data/supabase_client.py
# Supabase Client Configuration for the OnTime offline sync layer
# Remote task, status history and photo operations
# =============================================================================

from __future__ import annotations
import mimetypes
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from ontime_core.errors import (
    BackendUnavailableError,
    ConflictError,
    FailureClass,
    PermanentSyncError,
    SyncError,
    TransientSyncError,
    classify_failure,
)
from ontime_core.logging import get_logger

logger = get_logger(__name__)

TASKS_TABLE = "tasks"
STATUS_HISTORY_TABLE = "task_status_history"
PHOTOS_TABLE = "photos"
PHOTO_BUCKET = "task_photos"

UNIQUE_VIOLATION = "23505"


def get_supabase_client(settings=None):
    """
    Initialize and return a Supabase client from settings.

    Settings come from ``.env`` / environment or the ``[supabase]`` section
    of ``.streamlit/secrets.toml``:

        [supabase]
        url = "https://your-project.supabase.co"
        key = "your-anon-key"

    Returns:
        Supabase client instance or None if not configured
    """
    if settings is None:
        from ontime_core.config import get_settings
        settings = get_settings()

    if not settings.has_remote:
        logger.warning("Supabase credentials not configured; running local-only")
        return None

    try:
        from supabase import create_client, Client

        client: Client = create_client(settings.supabase_url, settings.supabase_key)
        return client
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        return None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def photo_object_path(task_id: str, filename: str) -> str:
    """Storage path for a task photo; chosen once so retries write the same object."""
    return f"tasks/{task_id}/{int(time.time() * 1000)}-{filename}"


def _point(location: Optional[Dict[str, float]]) -> Optional[str]:
    """PostGIS text form of a {lat, lng} dict."""
    if not location:
        return None
    return f"POINT({location['lng']} {location['lat']})"


class RemoteBackend(ABC):
    """
    Request/response boundary to the hosted backend.

    Implementations raise ``TransientSyncError`` for failures worth retrying
    unchanged and ``PermanentSyncError`` (or ``ConflictError``) otherwise.
    """

    @abstractmethod
    def fetch_tasks(
        self,
        organization_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def create_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update_task_status(
        self,
        task_id: str,
        status: str,
        notes: Optional[str] = None,
        expected_updated_at: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def upload_photo(
        self,
        task_id: str,
        content: bytes,
        filename: str,
        photo_type: str,
        location: Optional[Dict[str, float]] = None,
        notes: Optional[str] = None,
        taken_at: Optional[str] = None,
        object_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    def is_connected(self) -> bool:
        return True


class SupabaseBackend(RemoteBackend):
    """
    Supabase implementation of the remote backend.

    Every call translates library errors into sync errors so the reconciler
    can tell "try again later" from "needs the user".
    """

    PAGE_SIZE = 1000

    def __init__(self, client=None, settings=None):
        """
        Args:
            client: Ready Supabase client (default: built from settings)
            settings: SyncSettings used when no client is passed
        """
        self._client = client if client is not None else get_supabase_client(settings)

    def is_connected(self) -> bool:
        """Check if a Supabase client is available."""
        return self._client is not None

    def _require_client(self, operation: str):
        if self._client is None:
            raise BackendUnavailableError(operation=operation)
        return self._client

    @staticmethod
    def _translate(error: Exception, operation: str, entity: Optional[str] = None) -> SyncError:
        if isinstance(error, SyncError):
            return error

        message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        details = {"cause": error.__class__.__name__}
        code = getattr(error, "code", None)
        if code:
            details["remote_code"] = str(code)

        if classify_failure(error) is FailureClass.TRANSIENT:
            return TransientSyncError(message, operation=operation, entity=entity, details=details)
        return PermanentSyncError(message, operation=operation, entity=entity, details=details)

    # =========================================================================
    # TASKS
    # =========================================================================

    def fetch_tasks(
        self,
        organization_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch ALL tasks visible to the caller, newest first.

        Pages through the 1000-row response limit.
        """
        client = self._require_client("fetch_tasks")
        rows: List[Dict[str, Any]] = []
        offset = 0

        try:
            while True:
                query = client.table(TASKS_TABLE).select("*")
                if organization_id:
                    query = query.eq("organization_id", organization_id)
                if assigned_to:
                    query = query.eq("assigned_to", assigned_to)
                query = query.order("created_at", desc=True)
                response = query.range(offset, offset + self.PAGE_SIZE - 1).execute()

                batch = response.data or []
                rows.extend(batch)
                if len(batch) < self.PAGE_SIZE:
                    break
                offset += self.PAGE_SIZE
        except Exception as e:
            raise self._translate(e, "fetch_tasks") from e

        logger.debug(f"Fetched {len(rows)} tasks")
        return rows

    def fetch_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        client = self._require_client("fetch_task")
        try:
            response = client.table(TASKS_TABLE).select("*").eq("id", task_id).execute()
        except Exception as e:
            raise self._translate(e, "fetch_task", entity=task_id) from e
        return response.data[0] if response.data else None

    def create_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a task.

        A replay of a create whose response was lost hits the unique id; the
        existing row is returned instead of failing.
        """
        client = self._require_client("create_task")
        task_id = task.get("id")

        try:
            response = client.table(TASKS_TABLE).insert(task).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION and task_id:
                existing = self.fetch_task(task_id)
                if existing is not None:
                    logger.info(f"Task {task_id} already exists remotely; treating create as done")
                    return existing
            raise self._translate(e, "create_task", entity=task_id) from e
        except Exception as e:
            raise self._translate(e, "create_task", entity=task_id) from e

        if not response.data:
            raise PermanentSyncError("Task insert returned no row", operation="create_task", entity=task_id)
        return response.data[0]

    def update_task_status(
        self,
        task_id: str,
        status: str,
        notes: Optional[str] = None,
        expected_updated_at: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Change a task's status and record the change in its history.

        When ``expected_updated_at`` is given the update only applies if the
        row still carries that version; otherwise ``ConflictError``.
        """
        client = self._require_client("update_task_status")

        current = self.fetch_task(task_id)
        if current is None:
            raise PermanentSyncError(
                f"Task {task_id} no longer exists",
                operation="update_task_status",
                entity=task_id,
            )
        if expected_updated_at and current.get("updated_at") != expected_updated_at:
            raise ConflictError(
                f"Task {task_id} was changed on another device",
                expected_version=expected_updated_at,
                operation="update_task_status",
                entity=task_id,
            )

        now = _utc_now()
        updates = {
            "status": status,
            "completed_at": now if status == "completed" else None,
            "updated_at": now,
        }

        try:
            query = client.table(TASKS_TABLE).update(updates).eq("id", task_id)
            if expected_updated_at:
                query = query.eq("updated_at", expected_updated_at)
            response = query.execute()
        except Exception as e:
            raise self._translate(e, "update_task_status", entity=task_id) from e

        if not response.data:
            # Guard matched nothing: someone wrote between our read and update
            raise ConflictError(
                f"Task {task_id} was changed on another device",
                expected_version=expected_updated_at,
                operation="update_task_status",
                entity=task_id,
            )

        self._record_status_change(client, task_id, current.get("status"), status, notes, changed_by)
        return response.data[0]

    def _record_status_change(
        self,
        client,
        task_id: str,
        old_status: Optional[str],
        new_status: str,
        notes: Optional[str],
        changed_by: Optional[str],
    ) -> None:
        row = {
            "task_id": task_id,
            "old_status": old_status,
            "new_status": new_status,
            "changed_by": changed_by,
            "changed_at": _utc_now(),
            "notes": notes,
        }
        try:
            client.table(STATUS_HISTORY_TABLE).insert(row).execute()
        except Exception as e:
            # The status itself is already written; a retry would conflict
            logger.warning(f"Status history for task {task_id} not recorded: {e}")

    # =========================================================================
    # PHOTOS
    # =========================================================================

    def upload_photo(
        self,
        task_id: str,
        content: bytes,
        filename: str,
        photo_type: str,
        location: Optional[Dict[str, float]] = None,
        notes: Optional[str] = None,
        taken_at: Optional[str] = None,
        object_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upload photo bytes to storage and register them in ``photos``."""
        client = self._require_client("upload_photo")
        path = object_path or photo_object_path(task_id, filename)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            bucket = client.storage.from_(PHOTO_BUCKET)
            bucket.upload(path, content, {"content-type": content_type, "upsert": "true"})
            public_url = bucket.get_public_url(path)
        except Exception as e:
            raise self._translate(e, "upload_photo", entity=task_id) from e

        row = {
            "task_id": task_id,
            "url": public_url,
            "type": photo_type,
            "notes": notes,
            "timestamp": taken_at or _utc_now(),
        }
        point = _point(location)
        if point:
            row["location"] = point

        try:
            response = client.table(PHOTOS_TABLE).insert(row).execute()
        except Exception as e:
            raise self._translate(e, "upload_photo", entity=task_id) from e

        if not response.data:
            raise PermanentSyncError("Photo insert returned no row", operation="upload_photo", entity=task_id)
        logger.info(f"Uploaded {photo_type} photo for task {task_id}")
        return response.data[0]


# Global backend reference
_supabase_backend: Optional[SupabaseBackend] = None


def get_supabase_backend() -> SupabaseBackend:
    """Get the process-wide SupabaseBackend."""
    global _supabase_backend
    if _supabase_backend is None:
        _supabase_backend = SupabaseBackend()
    return _supabase_backend
