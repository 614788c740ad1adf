# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from ontime_core.data import RemoteBackend
from ontime_core.errors import ConflictError, PermanentSyncError


ORIGIN = "http://ontime.test"


# =============================================================================
# CLOCKS
# =============================================================================

class FakeClock:
    """Wall clock for LocalStore that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Seconds counter for ConnectivityMonitor debounce tests."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


# =============================================================================
# LOCAL STORE
# =============================================================================

@pytest.fixture
def store(tmp_path, clock):
    """Initialized LocalStore in a temp directory"""
    from ontime_core.offline.local_store import LocalStore

    local_store = LocalStore(
        db_path=tmp_path / "ontime.db",
        scope="org-1",
        clock=clock,
    )
    local_store.initialize()
    yield local_store
    local_store.close()


# =============================================================================
# CONNECTIVITY & NOTIFICATIONS
# =============================================================================

@pytest.fixture
def monitor(monotonic):
    """Monitor driven by explicit report() calls, committed immediately"""
    from ontime_core.offline.connection_manager import ConnectivityMonitor

    return ConnectivityMonitor(
        probe=lambda: True,
        debounce_seconds=0,
        clock=monotonic,
        auto_commit=False,
    )


@pytest.fixture
def inbox():
    from ontime_core.offline.notifications import NotificationInbox

    return NotificationInbox()


@pytest.fixture
def dispatcher(inbox):
    """Synchronous dispatcher collecting into the inbox"""
    from ontime_core.offline.notifications import NotificationDispatcher

    return NotificationDispatcher(sinks=[inbox], asynchronous=False)


# =============================================================================
# FAKE REMOTE BACKEND
# =============================================================================

class FakeBackend(RemoteBackend):
    """
    In-memory backend recording every call.

    ``fail(method, *errors)`` queues exceptions raised by the next calls of
    that method, in order.
    """

    def __init__(self):
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.photos: List[Dict[str, Any]] = []
        self.uploaded_paths: List[Optional[str]] = []
        self.history: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.connected = True
        self._failures: Dict[str, List[Exception]] = {}
        self._version = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_version(self) -> str:
        self._version += 1
        return f"2024-03-01T10:00:{self._version:02d}+00:00"

    def seed_task(self, task_id: str, **fields) -> Dict[str, Any]:
        task = {
            "id": task_id,
            "title": f"Task {task_id}",
            "status": "pending",
            "created_at": "2024-03-01T08:00:00+00:00",
            "updated_at": self._next_version(),
        }
        task.update(fields)
        self.tasks[task_id] = task
        return dict(task)

    def is_connected(self) -> bool:
        return self.connected

    def fetch_tasks(self, organization_id=None, assigned_to=None):
        self.calls.append(("fetch_tasks", organization_id))
        self._maybe_fail("fetch_tasks")
        return [dict(task) for task in self.tasks.values()]

    def create_task(self, task):
        self.calls.append(("create_task", task["id"]))
        self._maybe_fail("create_task")
        row = dict(task, updated_at=self._next_version())
        self.tasks[task["id"]] = row
        return dict(row)

    def update_task_status(self, task_id, status, notes=None, expected_updated_at=None, changed_by=None):
        self.calls.append(("update_task_status", task_id, status))
        self._maybe_fail("update_task_status")
        current = self.tasks.get(task_id)
        if current is None:
            raise PermanentSyncError(f"Task {task_id} no longer exists")
        if expected_updated_at and current["updated_at"] != expected_updated_at:
            raise ConflictError(f"Task {task_id} was changed on another device",
                                expected_version=expected_updated_at)
        self.history.append({"task_id": task_id, "old_status": current["status"],
                             "new_status": status, "notes": notes})
        current.update(status=status, updated_at=self._next_version())
        return dict(current)

    def upload_photo(self, task_id, content, filename, photo_type,
                     location=None, notes=None, taken_at=None, object_path=None):
        self.calls.append(("upload_photo", task_id, filename))
        self.uploaded_paths.append(object_path)
        self._maybe_fail("upload_photo")
        row = {"id": f"photo-{len(self.photos) + 1}", "task_id": task_id,
               "type": photo_type, "size": len(content), "timestamp": taken_at,
               "path": object_path}
        self.photos.append(row)
        return dict(row)


@pytest.fixture
def backend():
    return FakeBackend()


# =============================================================================
# HTTP STUBS
# =============================================================================

class StubAdapter(BaseAdapter):
    """
    Network stand-in for the cache gateway.

    ``routes`` maps a full URL to (status, body, headers); any other URL, or
    every URL while ``offline`` is set, raises ConnectionError.
    """

    def __init__(self):
        super().__init__()
        self.routes: Dict[str, tuple] = {}
        self.offline = False
        self.sent: List[str] = []

    def add(self, url: str, body: bytes = b"ok", status: int = 200, headers: Optional[dict] = None):
        self.routes[url] = (status, body, headers or {"Content-Type": "text/plain"})

    def send(self, request, **kwargs):
        self.sent.append(f"{request.method} {request.url}")
        if self.offline or request.url not in self.routes:
            raise requests.exceptions.ConnectionError(f"unreachable: {request.url}")

        status, body, headers = self.routes[request.url]
        response = requests.Response()
        response.status_code = status
        response.headers = CaseInsensitiveDict(headers)
        response._content = body
        response.url = request.url
        response.request = request
        return response

    def close(self):
        pass


@pytest.fixture
def network():
    return StubAdapter()


@pytest.fixture
def gateway(store, network):
    """CacheGateway over the temp store and the stub network"""
    from ontime_core.offline.cache_gateway import CacheGateway

    return CacheGateway(store, origin=ORIGIN, version=2, network=network)


@pytest.fixture
def session(gateway):
    """requests.Session routing the test origin through the gateway"""
    http = requests.Session()
    gateway.mount(http)
    yield http
    http.close()


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock Streamlit inside the UI helpers; buttons are unpressed by default"""
    from ontime_core.ui import sync_status

    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}
    mock_st.button.return_value = False
    mock_st.columns.side_effect = lambda spec: [MagicMock() for _ in range(spec)]

    monkeypatch.setattr(sync_status, "st", mock_st)
    return mock_st


@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value.select.return_value.execute.return_value.data = []
    mock_client.table.return_value.insert.return_value.execute.return_value = MagicMock()
    return mock_client
