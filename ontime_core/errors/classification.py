# =============================================================================
# ontime_core/errors/classification.py
# Transient vs. permanent failure classification for queued mutations
# =============================================================================

from __future__ import annotations
from enum import Enum
from typing import Optional

import httpx
import requests
from postgrest.exceptions import APIError

from .exceptions import SyncError


class FailureClass(Enum):
    """How the sync layer reacts to a failed remote call."""
    TRANSIENT = "transient"     # retry on next connectivity restore
    PERMANENT = "permanent"     # move to Failed, needs the user


# PostgREST codes that mean "the database could not be reached in time"
_TRANSIENT_PGRST_CODES = {"PGRST000", "PGRST001", "PGRST002", "PGRST003"}

# SQLSTATE classes/codes worth retrying unchanged
_TRANSIENT_SQLSTATE_PREFIXES = ("08", "53", "57P")
_TRANSIENT_SQLSTATES = {"40001", "40P01", "57014"}


def _api_error_is_transient(code: Optional[str]) -> bool:
    if not code:
        return False
    code = str(code)

    if code.isdigit() and len(code) == 3:
        status = int(code)
        return status in (408, 429) or status >= 500

    if code in _TRANSIENT_PGRST_CODES or code in _TRANSIENT_SQLSTATES:
        return True
    return code.startswith(_TRANSIENT_SQLSTATE_PREFIXES)


def classify_failure(exc: BaseException) -> FailureClass:
    """
    Classify an exception raised by a remote call.

    Unknown exceptions count as transient so they stay bounded by the
    reconciler's attempt limit instead of failing on first sight.
    """
    if isinstance(exc, SyncError):
        return FailureClass.TRANSIENT if exc.transient else FailureClass.PERMANENT

    if isinstance(exc, APIError):
        if _api_error_is_transient(getattr(exc, "code", None)):
            return FailureClass.TRANSIENT
        return FailureClass.PERMANENT

    if isinstance(exc, (httpx.TransportError, requests.exceptions.ConnectionError,
                        requests.exceptions.Timeout)):
        return FailureClass.TRANSIENT

    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return FailureClass.TRANSIENT

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (408, 429) or status >= 500:
            return FailureClass.TRANSIENT
        return FailureClass.PERMANENT

    return FailureClass.TRANSIENT
