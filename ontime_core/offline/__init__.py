# =============================================================================
# ontime_core/offline/__init__.py
# Offline-First Task Synchronization for OnTime
# =============================================================================
"""
Offline-First Sync Layer

Field workers keep updating tasks and taking photos without a connection;
everything they do is queued locally and replayed, in order, once the
device is back online.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                      OFFLINE SYNC LAYER                          │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                 OfflineTaskService                        │  │
│   │         (Single API - the UI uses this only)              │  │
│   └──────────────────────────────────────────────────────────┘  │
│              │                           │                      │
│              ▼                           ▼                      │
│   ┌──────────────────┐        ┌──────────────────┐             │
│   │ConnectivityMonitor│       │    LocalStore    │             │
│   │ (debounced state) │       │ (cache + queue)  │             │
│   └──────────────────┘        └──────────────────┘             │
│              │                      ▲        ▲                  │
│              ▼                      │        │                  │
│   ┌──────────────────┐              │  ┌──────────────┐        │
│   │  SyncReconciler  │──────────────┘  │ CacheGateway │        │
│   │ (drains queue)   │                 │ (HTTP cache) │        │
│   └──────────────────┘                 └──────────────┘        │
│         │        │                                              │
│         ▼        ▼                                              │
│   ┌──────────┐ ┌──────────────────────┐                        │
│   │ Supabase │ │NotificationDispatcher│                        │
│   └──────────┘ └──────────────────────┘                        │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from ontime_core.offline import get_task_service

service = get_task_service()
service.update_task_status(task_id, "in_progress")   # queued if offline
print(service.pending_sync_count)
"""

from ontime_core.offline.models import (
    TASK,
    PHOTO,
    TASK_STATUSES,
    PHOTO_TYPES,
    MutationKind,
    MutationStatus,
    CachedEntity,
    PendingMutation,
    StoredResponse,
)

from ontime_core.offline.local_store import (
    LocalStore,
    get_local_store,
)

from ontime_core.offline.connection_manager import (
    ConnectivityMonitor,
    ConnectionStatus,
    Subscription,
    get_connectivity_monitor,
)

from ontime_core.offline.cache_gateway import (
    CacheGateway,
    RequestClass,
    is_offline_response,
    get_cache_gateway,
)

from ontime_core.offline.notifications import (
    NotificationDispatcher,
    NotificationKind,
    Notification,
    NotificationInbox,
    get_notification_dispatcher,
)

from ontime_core.offline.sync_engine import (
    SyncReconciler,
    DrainOutcome,
    DrainReport,
    ReconcilerState,
    get_sync_reconciler,
)

from ontime_core.offline.task_service import (
    OfflineTaskService,
    get_task_service,
)

__all__ = [
    # Records
    "TASK",
    "PHOTO",
    "TASK_STATUSES",
    "PHOTO_TYPES",
    "MutationKind",
    "MutationStatus",
    "CachedEntity",
    "PendingMutation",
    "StoredResponse",
    # Local Persistence
    "LocalStore",
    "get_local_store",
    # Connectivity
    "ConnectivityMonitor",
    "ConnectionStatus",
    "Subscription",
    "get_connectivity_monitor",
    # Cache Gateway
    "CacheGateway",
    "RequestClass",
    "is_offline_response",
    "get_cache_gateway",
    # Notifications
    "NotificationDispatcher",
    "NotificationKind",
    "Notification",
    "NotificationInbox",
    "get_notification_dispatcher",
    # Sync
    "SyncReconciler",
    "DrainOutcome",
    "DrainReport",
    "ReconcilerState",
    "get_sync_reconciler",
    # Facade (Main API)
    "OfflineTaskService",
    "get_task_service",
]
