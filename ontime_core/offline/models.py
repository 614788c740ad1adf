# =============================================================================
# ontime_core/offline/models.py
# Records shared by the offline components
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


TASK = "task"
PHOTO = "photo"

TASK_STATUSES = ("pending", "in_progress", "completed")
PHOTO_TYPES = ("checkin", "progress", "completion")


class MutationKind(Enum):
    """Closed set of mutations that can be queued while offline."""
    UPDATE_TASK_STATUS = "UpdateTaskStatus"
    UPLOAD_PHOTO = "UploadPhoto"
    CREATE_TASK = "CreateTask"


class MutationStatus(Enum):
    PENDING = "pending"
    FAILED = "failed"


def entity_key(entity_type: str, entity_id: str) -> str:
    """Composite cache key, e.g. ``task:3f2c...``."""
    return f"{entity_type}:{entity_id}"


@dataclass
class CachedEntity:
    """Last-known snapshot of a server entity."""
    entity_type: str
    entity_id: str
    payload: Dict[str, Any]
    fetched_at: datetime

    @property
    def key(self) -> str:
        return entity_key(self.entity_type, self.entity_id)


@dataclass
class PendingMutation:
    """A UI action that could not reach the backend yet."""
    id: int
    kind: MutationKind
    payload: Dict[str, Any]
    created_at: datetime
    attempts: int = 0
    status: MutationStatus = MutationStatus.PENDING
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None

    @property
    def target(self) -> str:
        """Key of the entity this mutation writes to."""
        if self.kind is MutationKind.CREATE_TASK:
            return entity_key(TASK, str(self.payload.get("task", {}).get("id", "")))
        return entity_key(TASK, str(self.payload.get("task_id", "")))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": self.target,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "last_error": self.last_error,
        }


@dataclass
class StoredResponse:
    """An HTTP response held in a named cache bucket."""
    bucket: str
    url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    stored_at: Optional[datetime] = None
