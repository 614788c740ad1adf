# =============================================================================
# ontime_core/services/base_service.py
# Base Service Class and the result type returned by every public operation
# =============================================================================

from __future__ import annotations
from abc import ABC
from typing import Optional, Dict, Any, Callable
from dataclasses import dataclass

from ontime_core.logging import get_logger, LogContext
from ontime_core.errors import handle_error, OnTimeError


@dataclass
class ServiceResult:
    """
    Standard result container for service operations.

    Every public contract method that can fail returns one of these, so
    callers branch on ``success`` instead of catching exceptions. Task
    writes also say whether they were applied remotely or queued:

        result = service.update_task_status("t1", "completed")
        if result.queued:
            st.info("Saved offline")
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __bool__(self) -> bool:
        return self.success

    @property
    def queued(self) -> bool:
        """True when the action is waiting in the offline queue."""
        return bool(self.metadata and self.metadata.get("queued"))

    @property
    def source(self) -> Optional[str]:
        """Where read data came from: ``"remote"`` or ``"cache"``."""
        return self.metadata.get("source") if self.metadata else None

    @classmethod
    def ok(cls, data: Any = None, metadata: Dict[str, Any] = None) -> ServiceResult:
        """Create a successful result"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str = "UNKNOWN",
        metadata: Dict[str, Any] = None
    ) -> ServiceResult:
        """Create a failed result"""
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            metadata=metadata,
        )

    @classmethod
    def from_exception(cls, e: Exception) -> ServiceResult:
        """Failed result carrying an OnTime error's code and details"""
        if isinstance(e, OnTimeError):
            return cls(
                success=False,
                error=e.message,
                error_code=e.code,
                metadata=e.details,
            )
        return cls(
            success=False,
            error=str(e),
            error_code="EXCEPTION",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "metadata": self.metadata or {},
        }


class BaseService(ABC):
    """
    Abstract base class for services.

    Provides a class-named logger, timed operation logging and a wrapper
    that turns raised errors into failed ``ServiceResult``s.
    """

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def log_operation(self, operation: str) -> LogContext:
        """
        Create a logging context for an operation.

        Usage:
            with self.log_operation("User-initiated sync"):
                ...
        """
        return LogContext(self.logger, operation)

    def safe_execute(
        self,
        operation: str,
        func: Callable[..., Any],
        *args,
        **kwargs
    ) -> ServiceResult:
        """
        Run ``func`` and wrap its return value in ``ServiceResult.ok``.

        OnTime errors keep their code (``SYNC_005`` stays ``SYNC_005``);
        anything else becomes ``EXCEPTION``.
        """
        try:
            return ServiceResult.ok(func(*args, **kwargs))
        except OnTimeError as e:
            handle_error(e)
            return ServiceResult.from_exception(e)
        except Exception as e:
            self.logger.error(f"{operation} failed: {e}", exc_info=True)
            return ServiceResult.fail(str(e), error_code="EXCEPTION")
