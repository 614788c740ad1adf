# =============================================================================
# ontime_core/config/__init__.py
# Runtime settings
# =============================================================================

from .settings import (
    SyncSettings,
    load_settings,
    get_settings,
    DEFAULT_STATIC_PATHS,
    DEFAULT_API_PREFIXES,
)

__all__ = [
    "SyncSettings",
    "load_settings",
    "get_settings",
    "DEFAULT_STATIC_PATHS",
    "DEFAULT_API_PREFIXES",
]
