# =============================================================================
# tests/unit/test_supabase_backend.py
# Unit Tests for SupabaseBackend
# =============================================================================

from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from ontime_core.data.supabase_client import (
    PHOTO_BUCKET,
    STATUS_HISTORY_TABLE,
    SupabaseBackend,
    get_supabase_client,
)
from ontime_core.config import SyncSettings
from ontime_core.errors import (
    BackendUnavailableError,
    ConflictError,
    PermanentSyncError,
    TransientSyncError,
)

VERSION = "2024-03-01T10:00:00+00:00"


def _rows(*rows):
    return SimpleNamespace(data=list(rows))


def _tables(mock_supabase):
    """Give each table name its own mock chain."""
    tables = {}

    def table(name):
        if name not in tables:
            tables[name] = MagicMock(name=name)
        return tables[name]

    mock_supabase.table.side_effect = table
    return tables


@pytest.fixture
def tables(mock_supabase):
    return _tables(mock_supabase)


@pytest.fixture
def remote(mock_supabase):
    return SupabaseBackend(client=mock_supabase)


class TestClient:

    def test_no_credentials_gives_no_client(self):
        assert get_supabase_client(SyncSettings()) is None

    def test_unconfigured_backend_raises_transient(self):
        backend = SupabaseBackend(settings=SyncSettings())

        assert not backend.is_connected()
        with pytest.raises(BackendUnavailableError):
            backend.fetch_tasks()


class TestFetchTasks:

    def test_pages_until_short_page(self, remote, tables, monkeypatch):
        monkeypatch.setattr(SupabaseBackend, "PAGE_SIZE", 2)
        query = tables.setdefault("tasks", MagicMock())
        ranged = query.select.return_value.order.return_value.range
        ranged.return_value.execute.side_effect = [
            _rows({"id": "t1"}, {"id": "t2"}),
            _rows({"id": "t3"}),
        ]

        rows = remote.fetch_tasks()

        assert [row["id"] for row in rows] == ["t1", "t2", "t3"]
        assert ranged.call_args_list[0].args == (0, 1)
        assert ranged.call_args_list[1].args == (2, 3)
        query.select.return_value.order.assert_called_with("created_at", desc=True)

    def test_filters_by_organization(self, remote, tables):
        query = tables.setdefault("tasks", MagicMock())
        filtered = query.select.return_value.eq.return_value
        filtered.order.return_value.range.return_value.execute.return_value = _rows()

        assert remote.fetch_tasks(organization_id="org-1") == []
        query.select.return_value.eq.assert_called_once_with("organization_id", "org-1")

    def test_timeout_becomes_transient(self, remote, mock_supabase):
        mock_supabase.table.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(TransientSyncError):
            remote.fetch_tasks()

    def test_rejection_becomes_permanent(self, remote, mock_supabase):
        mock_supabase.table.side_effect = APIError(
            {"message": "permission denied", "code": "42501", "hint": None, "details": None}
        )

        with pytest.raises(PermanentSyncError) as exc_info:
            remote.fetch_tasks()
        assert exc_info.value.details["remote_code"] == "42501"


class TestUpdateTaskStatus:

    def _current(self, tables, status="pending", updated_at=VERSION):
        query = tables.setdefault("tasks", MagicMock())
        query.select.return_value.eq.return_value.execute.return_value = _rows(
            {"id": "t1", "status": status, "updated_at": updated_at}
        )
        return query

    def test_guarded_update_and_history(self, remote, tables):
        query = self._current(tables)
        guarded = query.update.return_value.eq.return_value.eq
        guarded.return_value.execute.return_value = _rows({"id": "t1", "status": "completed"})

        row = remote.update_task_status("t1", "completed", notes="done", expected_updated_at=VERSION,
                                        changed_by="user-1")

        assert row["status"] == "completed"
        updates = query.update.call_args.args[0]
        assert updates["status"] == "completed"
        assert updates["completed_at"] is not None
        guarded.assert_called_once_with("updated_at", VERSION)

        history = tables[STATUS_HISTORY_TABLE].insert.call_args.args[0]
        assert history["old_status"] == "pending"
        assert history["new_status"] == "completed"
        assert history["changed_by"] == "user-1"

    def test_in_progress_clears_completed_at(self, remote, tables):
        query = self._current(tables)
        query.update.return_value.eq.return_value.execute.return_value = _rows({"id": "t1"})

        remote.update_task_status("t1", "in_progress")

        assert query.update.call_args.args[0]["completed_at"] is None

    def test_stale_version_conflicts(self, remote, tables):
        query = self._current(tables, updated_at="2024-03-02T00:00:00+00:00")

        with pytest.raises(ConflictError):
            remote.update_task_status("t1", "completed", expected_updated_at=VERSION)
        query.update.assert_not_called()

    def test_guard_matching_nothing_conflicts(self, remote, tables):
        query = self._current(tables)
        query.update.return_value.eq.return_value.eq.return_value.execute.return_value = _rows()

        with pytest.raises(ConflictError):
            remote.update_task_status("t1", "completed", expected_updated_at=VERSION)

    def test_missing_task_is_permanent(self, remote, tables):
        query = tables.setdefault("tasks", MagicMock())
        query.select.return_value.eq.return_value.execute.return_value = _rows()

        with pytest.raises(PermanentSyncError):
            remote.update_task_status("gone", "completed")

    def test_history_failure_does_not_fail_update(self, remote, tables):
        query = self._current(tables)
        query.update.return_value.eq.return_value.execute.return_value = _rows({"id": "t1"})
        history = tables.setdefault(STATUS_HISTORY_TABLE, MagicMock())
        history.insert.return_value.execute.side_effect = httpx.ConnectError("refused")

        assert remote.update_task_status("t1", "cancelled") == {"id": "t1"}


class TestCreateTask:

    def test_insert_returns_row(self, remote, tables):
        query = tables.setdefault("tasks", MagicMock())
        query.insert.return_value.execute.return_value = _rows({"id": "t9", "title": "Fix pump"})

        assert remote.create_task({"id": "t9", "title": "Fix pump"})["title"] == "Fix pump"

    def test_replayed_create_returns_existing(self, remote, tables):
        query = tables.setdefault("tasks", MagicMock())
        query.insert.return_value.execute.side_effect = APIError(
            {"message": "duplicate key", "code": "23505", "hint": None, "details": None}
        )
        query.select.return_value.eq.return_value.execute.return_value = _rows({"id": "t9"})

        assert remote.create_task({"id": "t9", "title": "Fix pump"}) == {"id": "t9"}


class TestUploadPhoto:

    def test_upload_and_register(self, remote, tables, mock_supabase):
        bucket = mock_supabase.storage.from_.return_value
        bucket.get_public_url.return_value = "https://cdn/tasks/t1/photo.jpg"
        photos = tables.setdefault("photos", MagicMock())
        photos.insert.return_value.execute.return_value = _rows({"id": "p1"})

        row = remote.upload_photo("t1", b"jpeg", "site.jpg", "checkin",
                                  location={"lat": -26.2, "lng": 28.0})

        assert row == {"id": "p1"}
        mock_supabase.storage.from_.assert_called_with(PHOTO_BUCKET)
        path, content, options = bucket.upload.call_args.args
        assert path.startswith("tasks/t1/") and path.endswith("-site.jpg")
        assert content == b"jpeg"
        assert options == {"content-type": "image/jpeg", "upsert": "true"}

        inserted = photos.insert.call_args.args[0]
        assert inserted["url"] == "https://cdn/tasks/t1/photo.jpg"
        assert inserted["location"] == "POINT(28.0 -26.2)"

    def test_retry_after_failed_insert_reuses_object(self, remote, tables, mock_supabase):
        bucket = mock_supabase.storage.from_.return_value
        photos = tables.setdefault("photos", MagicMock())
        photos.insert.return_value.execute.side_effect = [
            httpx.ReadTimeout("slow"),
            _rows({"id": "p1"}),
        ]

        with pytest.raises(TransientSyncError):
            remote.upload_photo("t1", b"jpeg", "site.jpg", "checkin",
                                object_path="tasks/t1/1700000000000-site.jpg")
        remote.upload_photo("t1", b"jpeg", "site.jpg", "checkin",
                            object_path="tasks/t1/1700000000000-site.jpg")

        paths = [call.args[0] for call in bucket.upload.call_args_list]
        assert paths == ["tasks/t1/1700000000000-site.jpg"] * 2

    def test_storage_outage_is_transient(self, remote, mock_supabase):
        mock_supabase.storage.from_.return_value.upload.side_effect = httpx.ConnectError("refused")

        with pytest.raises(TransientSyncError):
            remote.upload_photo("t1", b"jpeg", "site.jpg", "checkin")
