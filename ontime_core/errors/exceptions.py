# =============================================================================
# ontime_core/errors/exceptions.py
# Custom Exception Hierarchy for the OnTime offline sync layer
# =============================================================================

from typing import Optional, Dict, Any


class OnTimeError(Exception):
    """
    Base exception for all OnTime errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "SYNC_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "OT_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORAGE EXCEPTIONS
# =============================================================================

class StorageError(OnTimeError):
    """Raised when the local store cannot complete an operation"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table

        kwargs.setdefault("code", "STORE_002")
        super().__init__(
            message=message,
            details=details,
            **kwargs,
        )


class StorageFullError(StorageError):
    """Raised when the pending queue or the database file has no room left"""

    def __init__(
        self,
        message: str = "Local storage is full; the action was not queued",
        limit: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if limit is not None:
            details["limit"] = limit

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class SyncError(OnTimeError):
    """Base class for failures while talking to the remote backend"""

    transient = True

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        entity: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if entity:
            details["entity"] = entity

        super().__init__(
            message=message,
            details=details,
            **kwargs,
        )


class TransientSyncError(SyncError):
    """Network timeout or offline at call time; retry later without changes"""

    transient = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "SYNC_001")
        super().__init__(message, **kwargs)


class PermanentSyncError(SyncError):
    """Server rejected the mutation; retrying unchanged will not help"""

    transient = False

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "SYNC_002")
        super().__init__(message, **kwargs)


class ConflictError(PermanentSyncError):
    """The entity changed server-side since the mutation was recorded"""

    def __init__(
        self,
        message: str,
        expected_version: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if expected_version:
            details["expected_version"] = expected_version

        super().__init__(
            message,
            code="SYNC_003",
            details=details,
            **kwargs,
        )


class BackendUnavailableError(TransientSyncError):
    """No remote client is configured or it could not be created"""

    def __init__(self, message: str = "Remote backend is not configured", **kwargs):
        super().__init__(message, code="SYNC_004", **kwargs)


class SyncInProgressError(OnTimeError):
    """A drain cycle is already running; the request was not started"""

    def __init__(self, message: str = "A sync is already running", **kwargs):
        super().__init__(message, code="SYNC_005", **kwargs)


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(OnTimeError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
