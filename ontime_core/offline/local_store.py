# =============================================================================
# ontime_core/offline/local_store.py
# Local SQLite Persistence for Offline Operations
# =============================================================================
"""
LocalStore - the only owner of durable client-side state.

Holds three things, all in one SQLite file:
- cached_entities: last full fetch of each server resource type
- pending_mutations: FIFO queue of actions recorded while offline
- cache_entries: HTTP responses kept by the cache gateway, per named bucket

Photo bytes for queued uploads live next to the database in ``blobs/``.
Every method returns a settled value; nothing here needs polling.
"""

from __future__ import annotations
import errno
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from ontime_core.errors import StorageError, StorageFullError
from ontime_core.logging import get_logger
from ontime_core.offline.models import (
    CachedEntity,
    MutationKind,
    MutationStatus,
    PendingMutation,
    StoredResponse,
)
from ontime_core.services import ServiceResult

logger = get_logger(__name__)

_ENOSPC_CODES = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

QUEUE_COLUMNS = ["id", "kind", "target", "status", "attempts",
                 "created_at", "last_attempt", "last_error"]


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _is_full(error: BaseException) -> bool:
    if isinstance(error, OSError):
        return error.errno in _ENOSPC_CODES
    return "full" in str(error).lower()


class LocalStore:
    """
    SQLite-backed local persistence for the offline layer.

    Usage:
        store = LocalStore(Path("local_data/ontime.db"), scope="org-1")
        store.initialize()
        store.put_cached_entities("task", rows)
        result = store.enqueue_mutation(MutationKind.UPDATE_TASK_STATUS, payload)
    """

    DEFAULT_DB_PATH = Path("local_data") / "ontime.db"
    FRESHNESS_WINDOW = timedelta(hours=24)
    MAX_PENDING = 500

    SCHEMA = {
        "cached_entities": """
            CREATE TABLE IF NOT EXISTS cached_entities (
                scope TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                fetched_at TEXT NOT NULL,
                PRIMARY KEY (scope, entity_type, entity_id)
            )
        """,
        "pending_mutations": """
            CREATE TABLE IF NOT EXISTS pending_mutations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                last_attempt TEXT,
                last_error TEXT
            )
        """,
        "pending_mutations_order": """
            CREATE INDEX IF NOT EXISTS idx_pending_mutations_order
            ON pending_mutations (scope, status, created_at, id)
        """,
        "cache_entries": """
            CREATE TABLE IF NOT EXISTS cache_entries (
                bucket TEXT NOT NULL,
                url TEXT NOT NULL,
                status_code INTEGER NOT NULL,
                headers_json TEXT,
                body BLOB,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (bucket, url)
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT
            )
        """,
    }

    _instance: Optional[LocalStore] = None
    _lock = threading.Lock()

    def __init__(
        self,
        db_path: Optional[Path] = None,
        scope: str = "default",
        blob_dir: Optional[Path] = None,
        freshness_window: Optional[timedelta] = None,
        max_pending: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
            scope: Organization/user key partitioning queue and cache rows
            blob_dir: Directory for queued photo bytes
            freshness_window: Max age of a cached entity usable offline
            max_pending: Queue quota; enqueue beyond it reports storage full
            clock: Source of "now" (tests inject a fake)
        """
        self.db_path = Path(db_path or self.DEFAULT_DB_PATH)
        self.scope = scope
        self.blob_dir = Path(blob_dir) if blob_dir else self.db_path.parent / "blobs"
        self.freshness_window = freshness_window or self.FRESHNESS_WINDOW
        self.max_pending = max_pending or self.MAX_PENDING
        self._clock = clock
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._initialized = False
        self._ensure_directories()

    @classmethod
    def get_instance(cls, **kwargs) -> LocalStore:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = LocalStore(**kwargs)
        return cls._instance

    def _ensure_directories(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.blob_dir.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def transaction(self):
        """Context manager for write transactions."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Create tables and indexes."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for name, ddl in self.SCHEMA.items():
                conn.execute(ddl)
                logger.debug(f"Created/verified: {name}")

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path} (scope={self.scope})")

    def _now(self) -> datetime:
        return self._clock()

    def _storage_failure(self, operation: str, error: Exception) -> ServiceResult:
        if _is_full(error):
            logger.error(f"{operation}: local storage is full ({error})")
            return ServiceResult.from_exception(StorageFullError())
        logger.error(f"{operation} failed: {error}", exc_info=True)
        return ServiceResult.from_exception(StorageError(f"{operation} failed: {error}"))

    # =========================================================================
    # CACHED ENTITIES
    # =========================================================================

    def _row_to_entity(self, row: sqlite3.Row) -> CachedEntity:
        return CachedEntity(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            payload=json.loads(row["payload_json"]),
            fetched_at=_parse(row["fetched_at"]),
        )

    def _freshness_cutoff(self) -> str:
        return _iso(self._now() - self.freshness_window)

    def get_cached_entities(self, entity_type: str) -> List[CachedEntity]:
        """
        Return every non-stale cached entity of a type.

        Entries older than the freshness window are left out; an empty list
        means nothing usable is cached.
        """
        try:
            rows = self._get_connection().execute(
                """
                SELECT * FROM cached_entities
                WHERE scope = ? AND entity_type = ? AND fetched_at >= ?
                ORDER BY entity_id
                """,
                [self.scope, entity_type, self._freshness_cutoff()],
            ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Reading cached {entity_type} failed: {e}")
            return []
        return [self._row_to_entity(row) for row in rows]

    def get_cached_entity(
        self,
        entity_type: str,
        entity_id: str,
        include_stale: bool = False,
    ) -> Optional[CachedEntity]:
        """Return one cached entity, or None. Stale entries only with include_stale."""
        cutoff = "" if include_stale else self._freshness_cutoff()
        try:
            row = self._get_connection().execute(
                """
                SELECT * FROM cached_entities
                WHERE scope = ? AND entity_type = ? AND entity_id = ? AND fetched_at >= ?
                """,
                [self.scope, entity_type, str(entity_id), cutoff],
            ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Reading cached {entity_type}:{entity_id} failed: {e}")
            return None
        return self._row_to_entity(row) if row else None

    def put_cached_entities(
        self,
        entity_type: str,
        entities: Iterable[Dict[str, Any]],
    ) -> ServiceResult:
        """
        Replace the whole cached set of a type with a fresh full fetch.

        Each payload must carry an ``id``. Duplicate ids collapse to the last
        payload, so repeating the same call never duplicates rows.
        """
        now = _iso(self._now())
        by_id: Dict[str, Dict[str, Any]] = {}
        for payload in entities:
            if payload.get("id") is None:
                return ServiceResult.fail(
                    f"Cannot cache {entity_type} without an id", error_code="STORE_003"
                )
            by_id[str(payload["id"])] = payload

        try:
            with self.transaction() as conn:
                conn.execute(
                    "DELETE FROM cached_entities WHERE scope = ? AND entity_type = ?",
                    [self.scope, entity_type],
                )
                conn.executemany(
                    """
                    INSERT INTO cached_entities
                        (scope, entity_type, entity_id, payload_json, fetched_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (self.scope, entity_type, entity_id, json.dumps(payload, default=str), now)
                        for entity_id, payload in by_id.items()
                    ],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Caching {entity_type}", e)

        logger.debug(f"Cached {len(by_id)} {entity_type} entities")
        return ServiceResult.ok(len(by_id))

    def refresh_cached_entity(self, entity_type: str, payload: Dict[str, Any]) -> ServiceResult:
        """Overwrite a single cached entity with an authoritative snapshot."""
        if payload.get("id") is None:
            return ServiceResult.fail(
                f"Cannot cache {entity_type} without an id", error_code="STORE_003"
            )
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO cached_entities
                        (scope, entity_type, entity_id, payload_json, fetched_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [self.scope, entity_type, str(payload["id"]),
                     json.dumps(payload, default=str), _iso(self._now())],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Refreshing {entity_type}", e)
        return ServiceResult.ok(str(payload["id"]))

    def patch_cached_entity(
        self,
        entity_type: str,
        entity_id: str,
        changes: Dict[str, Any],
    ) -> ServiceResult:
        """
        Merge local changes into a cached payload without touching fetched_at.

        Used for optimistic display of queued edits; returns ok(None) when the
        entity is not cached.
        """
        try:
            with self.transaction() as conn:
                row = conn.execute(
                    """
                    SELECT payload_json FROM cached_entities
                    WHERE scope = ? AND entity_type = ? AND entity_id = ?
                    """,
                    [self.scope, entity_type, str(entity_id)],
                ).fetchone()
                if row is None:
                    return ServiceResult.ok(None)
                payload = json.loads(row["payload_json"])
                payload.update(changes)
                conn.execute(
                    """
                    UPDATE cached_entities SET payload_json = ?
                    WHERE scope = ? AND entity_type = ? AND entity_id = ?
                    """,
                    [json.dumps(payload, default=str), self.scope, entity_type, str(entity_id)],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Patching {entity_type}:{entity_id}", e)
        return ServiceResult.ok(payload)

    def invalidate_cached_entity(self, entity_type: str, entity_id: str) -> ServiceResult:
        """Drop one cached entity so the next read goes to the network."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    DELETE FROM cached_entities
                    WHERE scope = ? AND entity_type = ? AND entity_id = ?
                    """,
                    [self.scope, entity_type, str(entity_id)],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Invalidating {entity_type}:{entity_id}", e)
        return ServiceResult.ok(cursor.rowcount > 0)

    def prune_stale_entities(self) -> int:
        """Delete cached entities older than the freshness window."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM cached_entities WHERE scope = ? AND fetched_at < ?",
                [self.scope, self._freshness_cutoff()],
            )
        if cursor.rowcount:
            logger.info(f"Pruned {cursor.rowcount} stale cached entities")
        return cursor.rowcount

    def clear_cached_entities(self, entity_type: Optional[str] = None) -> int:
        """Explicit cache clear for one type or all types."""
        sql = "DELETE FROM cached_entities WHERE scope = ?"
        params: List[Any] = [self.scope]
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    # =========================================================================
    # PENDING MUTATION QUEUE
    # =========================================================================

    def _row_to_mutation(self, row: sqlite3.Row) -> PendingMutation:
        return PendingMutation(
            id=row["id"],
            kind=MutationKind(row["kind"]),
            payload=json.loads(row["payload_json"]),
            created_at=_parse(row["created_at"]),
            attempts=row["attempts"],
            status=MutationStatus(row["status"]),
            last_error=row["last_error"],
            last_attempt=_parse(row["last_attempt"]),
        )

    def enqueue_mutation(self, kind: MutationKind, payload: Dict[str, Any]) -> ServiceResult:
        """
        Append a mutation to the queue.

        Returns:
            ok(id) on success; fail with code STORE_001 when the queue quota or
            the disk is exhausted, so the caller can tell the user the action
            was not queued.
        """
        try:
            payload_json = json.dumps(payload, default=str)
            with self.transaction() as conn:
                queued = conn.execute(
                    "SELECT COUNT(*) AS count FROM pending_mutations WHERE scope = ?",
                    [self.scope],
                ).fetchone()["count"]
                if queued >= self.max_pending:
                    raise StorageFullError(limit=self.max_pending)

                cursor = conn.execute(
                    """
                    INSERT INTO pending_mutations (scope, kind, payload_json, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [self.scope, kind.value, payload_json, _iso(self._now())],
                )
                mutation_id = cursor.lastrowid
        except StorageFullError as e:
            logger.error(f"Queue quota reached ({self.max_pending}); {kind.value} not queued")
            return ServiceResult.from_exception(e)
        except sqlite3.Error as e:
            return self._storage_failure(f"Queueing {kind.value}", e)

        logger.info(f"Queued {kind.value} as mutation {mutation_id}")
        return ServiceResult.ok(mutation_id)

    def _query(self, operation: str, sql: str, params: List[Any]) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"{operation} failed: {e}")
            raise StorageError(f"{operation} failed: {e}", table="pending_mutations") from e

    def _list_mutations(self, status: MutationStatus) -> List[PendingMutation]:
        rows = self._query(
            f"Listing {status.value} mutations",
            """
            SELECT * FROM pending_mutations
            WHERE scope = ? AND status = ?
            ORDER BY created_at ASC, id ASC
            """,
            [self.scope, status.value],
        )
        return [self._row_to_mutation(row) for row in rows]

    def list_pending_mutations(self) -> List[PendingMutation]:
        """Pending mutations in creation order."""
        return self._list_mutations(MutationStatus.PENDING)

    def list_failed_mutations(self) -> List[PendingMutation]:
        """Mutations waiting for the user to retry or discard them."""
        return self._list_mutations(MutationStatus.FAILED)

    def get_mutation(self, mutation_id: int) -> Optional[PendingMutation]:
        rows = self._query(
            f"Reading mutation {mutation_id}",
            "SELECT * FROM pending_mutations WHERE scope = ? AND id = ?",
            [self.scope, mutation_id],
        )
        return self._row_to_mutation(rows[0]) if rows else None

    def remove_mutation(self, mutation_id: int) -> ServiceResult:
        """Delete a mutation (after a confirmed sync or an explicit discard)."""
        mutation = self.get_mutation(mutation_id)
        if mutation is None:
            return ServiceResult.fail(f"Mutation {mutation_id} not found", error_code="STORE_004")

        try:
            with self.transaction() as conn:
                conn.execute(
                    "DELETE FROM pending_mutations WHERE scope = ? AND id = ?",
                    [self.scope, mutation_id],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Removing mutation {mutation_id}", e)

        blob_ref = mutation.payload.get("blob_ref")
        if mutation.kind is MutationKind.UPLOAD_PHOTO and blob_ref:
            self.delete_blob(blob_ref)
        return ServiceResult.ok(mutation_id)

    def discard_mutation(self, mutation_id: int) -> ServiceResult:
        """User-acknowledged removal of a failed mutation."""
        logger.info(f"Discarding mutation {mutation_id}")
        return self.remove_mutation(mutation_id)

    def mark_attempt(self, mutation_id: int, error: Optional[str] = None) -> ServiceResult:
        """Record a failed sync attempt; returns ok(attempts)."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE pending_mutations
                    SET attempts = attempts + 1, last_attempt = ?, last_error = ?
                    WHERE scope = ? AND id = ?
                    """,
                    [_iso(self._now()), error, self.scope, mutation_id],
                )
                if cursor.rowcount == 0:
                    return ServiceResult.fail(
                        f"Mutation {mutation_id} not found", error_code="STORE_004"
                    )
                attempts = conn.execute(
                    "SELECT attempts FROM pending_mutations WHERE id = ?", [mutation_id]
                ).fetchone()["attempts"]
        except sqlite3.Error as e:
            return self._storage_failure(f"Recording attempt for {mutation_id}", e)
        return ServiceResult.ok(attempts)

    def mark_failed(self, mutation_id: int, error: Optional[str] = None) -> ServiceResult:
        """Move a mutation to Failed; it stays until retried or discarded."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE pending_mutations
                    SET status = 'failed', last_attempt = ?,
                        last_error = COALESCE(?, last_error)
                    WHERE scope = ? AND id = ?
                    """,
                    [_iso(self._now()), error, self.scope, mutation_id],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Failing mutation {mutation_id}", e)
        if cursor.rowcount == 0:
            return ServiceResult.fail(f"Mutation {mutation_id} not found", error_code="STORE_004")
        return ServiceResult.ok(mutation_id)

    def retry_failed(self, mutation_id: int) -> ServiceResult:
        """Put a failed mutation back in the queue with a fresh attempt count."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE pending_mutations
                    SET status = 'pending', attempts = 0, last_error = NULL
                    WHERE scope = ? AND id = ? AND status = 'failed'
                    """,
                    [self.scope, mutation_id],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Retrying mutation {mutation_id}", e)
        if cursor.rowcount == 0:
            return ServiceResult.fail(
                f"Mutation {mutation_id} is not in the failed state", error_code="STORE_004"
            )
        return ServiceResult.ok(mutation_id)

    def _count(self, status: MutationStatus) -> int:
        rows = self._query(
            f"Counting {status.value} mutations",
            "SELECT COUNT(*) AS count FROM pending_mutations WHERE scope = ? AND status = ?",
            [self.scope, status.value],
        )
        return rows[0]["count"] if rows else 0

    def pending_count(self) -> int:
        return self._count(MutationStatus.PENDING)

    def failed_count(self) -> int:
        return self._count(MutationStatus.FAILED)

    def pending_mutations_frame(self, include_failed: bool = True) -> pd.DataFrame:
        """Queue contents as a DataFrame for status displays."""
        mutations = self.list_pending_mutations()
        if include_failed:
            mutations += self.list_failed_mutations()
        return pd.DataFrame([m.to_dict() for m in mutations], columns=QUEUE_COLUMNS)

    # =========================================================================
    # PHOTO BLOBS
    # =========================================================================

    def save_blob(self, content: bytes, filename: str) -> ServiceResult:
        """
        Keep photo bytes until the queued upload runs.

        Returns:
            ok(blob_ref) where blob_ref is a file name inside blob_dir
        """
        safe_name = "".join(c for c in filename if c.isalnum() or c in "._-") or "photo"
        blob_ref = f"{uuid.uuid4().hex}_{safe_name}"
        try:
            (self.blob_dir / blob_ref).write_bytes(content)
        except OSError as e:
            return self._storage_failure(f"Saving blob {filename}", e)
        return ServiceResult.ok(blob_ref)

    def read_blob(self, blob_ref: str) -> Optional[bytes]:
        path = self.blob_dir / blob_ref
        if not path.exists():
            return None
        return path.read_bytes()

    def delete_blob(self, blob_ref: str) -> bool:
        path = self.blob_dir / blob_ref
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete blob {blob_ref}: {e}")
            return False
        return True

    # =========================================================================
    # RESPONSE CACHE BUCKETS
    # =========================================================================

    def put_response(self, response: StoredResponse) -> ServiceResult:
        """Store a response in its bucket, replacing any previous one for the URL."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries
                        (bucket, url, status_code, headers_json, body, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [response.bucket, response.url, response.status_code,
                     json.dumps(response.headers), sqlite3.Binary(response.body),
                     _iso(self._now())],
                )
        except sqlite3.Error as e:
            return self._storage_failure(f"Caching response {response.url}", e)
        return ServiceResult.ok(response.url)

    def match_response(
        self,
        url: str,
        buckets: Optional[Iterable[str]] = None,
    ) -> Optional[StoredResponse]:
        """Find a cached response for a URL, searching the given buckets in order."""
        conn = self._get_connection()
        if buckets is None:
            rows = conn.execute(
                "SELECT * FROM cache_entries WHERE url = ? ORDER BY stored_at DESC",
                [url],
            ).fetchall()
        else:
            rows = []
            for bucket in buckets:
                row = conn.execute(
                    "SELECT * FROM cache_entries WHERE bucket = ? AND url = ?",
                    [bucket, url],
                ).fetchone()
                if row is not None:
                    rows.append(row)
                    break

        if not rows:
            return None
        row = rows[0]
        return StoredResponse(
            bucket=row["bucket"],
            url=row["url"],
            status_code=row["status_code"],
            headers=json.loads(row["headers_json"] or "{}"),
            body=bytes(row["body"] or b""),
            stored_at=_parse(row["stored_at"]),
        )

    def list_buckets(self) -> List[str]:
        rows = self._get_connection().execute(
            "SELECT DISTINCT bucket FROM cache_entries ORDER BY bucket"
        ).fetchall()
        return [row["bucket"] for row in rows]

    def delete_bucket(self, bucket: str) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM cache_entries WHERE bucket = ?", [bucket]).rowcount

    def delete_buckets_except(self, keep: Iterable[str]) -> List[str]:
        """Delete every bucket whose name is not in ``keep``; returns the deleted names."""
        keep = set(keep)
        deleted = [bucket for bucket in self.list_buckets() if bucket not in keep]
        for bucket in deleted:
            self.delete_bucket(bucket)
            logger.info(f"Deleted old cache bucket: {bucket}")
        return deleted

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        row = self._get_connection().execute(
            "SELECT value FROM app_settings WHERE key = ?", [key]
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return row["value"]

    def set_setting(self, key: str, value: Any) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO app_settings (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                [key, json.dumps(value), _iso(self._now())],
            )

    def close(self) -> None:
        """Close this thread's database connection."""
        if getattr(self._local, "connection", None) is not None:
            self._local.connection.close()
            self._local.connection = None


# Singleton accessor
_local_store: Optional[LocalStore] = None


def get_local_store() -> LocalStore:
    """Get the global LocalStore built from settings."""
    global _local_store
    if _local_store is None:
        from ontime_core.config import get_settings

        settings = get_settings()
        _local_store = LocalStore.get_instance(
            db_path=settings.db_path,
            scope=settings.scope,
            blob_dir=settings.blob_dir,
            freshness_window=timedelta(hours=settings.freshness_hours),
            max_pending=settings.max_pending_mutations,
        )
        _local_store.initialize()
    return _local_store
