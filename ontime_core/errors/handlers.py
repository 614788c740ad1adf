# =============================================================================
# ontime_core/errors/handlers.py
# Error Handling Utilities for the OnTime offline sync layer
# =============================================================================

from __future__ import annotations
import traceback
from typing import Optional

from ontime_core.logging import get_logger
from .exceptions import OnTimeError

logger = get_logger(__name__)


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> dict:
    """
    Centralized error handling function.

    The core never shows anything to the user; it logs and hands back a
    dictionary the UI layer can render however it likes. Recoverable
    OnTime errors (a sync already running, a transient outage) are logged
    as warnings, everything else as errors with the traceback.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Custom message (uses error message if None)

    Returns:
        Dict with message, code, details and recoverable flag
    """
    if isinstance(error, OnTimeError):
        message = user_message or error.message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": "".join(traceback.format_exception(
            type(error), error, error.__traceback__
        ))}
        recoverable = True

    if log_error:
        if isinstance(error, OnTimeError) and recoverable:
            logger.warning(f"[{code}] {message}")
        else:
            logger.error(
                f"[{code}] {message}",
                extra={"details": details},
                exc_info=error,
            )

    return {
        "message": message,
        "code": code,
        "details": details,
        "recoverable": recoverable,
    }
