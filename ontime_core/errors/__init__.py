# =============================================================================
# ontime_core/errors/__init__.py
# Centralized Error Handling for the OnTime offline sync layer
# =============================================================================

from .exceptions import (
    OnTimeError,
    StorageError,
    StorageFullError,
    SyncError,
    TransientSyncError,
    PermanentSyncError,
    ConflictError,
    BackendUnavailableError,
    SyncInProgressError,
    ConfigurationError,
)

from .classification import (
    FailureClass,
    classify_failure,
)

from .handlers import handle_error

__all__ = [
    # Exceptions
    "OnTimeError",
    "StorageError",
    "StorageFullError",
    "SyncError",
    "TransientSyncError",
    "PermanentSyncError",
    "ConflictError",
    "BackendUnavailableError",
    "SyncInProgressError",
    "ConfigurationError",
    # Classification
    "FailureClass",
    "classify_failure",
    # Handlers
    "handle_error",
]
