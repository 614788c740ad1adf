# =============================================================================
# ontime_core/config/settings.py
# Settings for the offline sync layer (.env, environment, Streamlit secrets)
# =============================================================================
"""
Settings are resolved in this order, later sources winning:

1. Defaults below
2. ``st.secrets`` sections when running inside Streamlit:

       [supabase]
       url = "https://your-project.supabase.co"
       key = "your-anon-key"

       [ontime]
       scope = "org-123"
       cache_version = 3

3. Environment variables (``.env`` is loaded first via python-dotenv)
"""

from __future__ import annotations
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import streamlit as st
from dotenv import load_dotenv

from ontime_core.errors import ConfigurationError
from ontime_core.logging import get_logger

logger = get_logger(__name__)

# Shell page, icons and manifest served cache-first
DEFAULT_STATIC_PATHS: Tuple[str, ...] = (
    "/",
    "/tasks",
    "/employees",
    "/manifest.json",
    "/icons/icon-192x192.svg",
    "/icons/icon-512x512.svg",
)

# Data-bearing API reads served network-first
DEFAULT_API_PREFIXES: Tuple[str, ...] = ("/api/",)


@dataclass(frozen=True)
class SyncSettings:
    """Configuration for the offline sync layer."""
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    data_dir: Path = Path("local_data")
    scope: str = "default"
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    origin: str = "http://localhost:3000"
    cache_version: int = 2
    static_paths: Tuple[str, ...] = DEFAULT_STATIC_PATHS
    api_prefixes: Tuple[str, ...] = DEFAULT_API_PREFIXES
    freshness_hours: float = 24.0
    debounce_seconds: float = 2.0
    max_attempts: int = 5
    max_pending_mutations: int = 500
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    connection_timeout: float = 5.0
    request_timeout: float = 15.0

    @property
    def db_path(self) -> Path:
        return self.data_dir / "ontime.db"

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def has_remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def with_overrides(self, **overrides: Any) -> SyncSettings:
        """Return a copy with some fields replaced."""
        return replace(self, **overrides)


# Environment variable -> (field name, type)
_ENV_FIELDS = {
    "SUPABASE_URL": ("supabase_url", str),
    "SUPABASE_KEY": ("supabase_key", str),
    "ONTIME_DATA_DIR": ("data_dir", Path),
    "ONTIME_SCOPE": ("scope", str),
    "ONTIME_ORGANIZATION_ID": ("organization_id", str),
    "ONTIME_USER_ID": ("user_id", str),
    "ONTIME_ORIGIN": ("origin", str),
    "ONTIME_CACHE_VERSION": ("cache_version", int),
    "ONTIME_FRESHNESS_HOURS": ("freshness_hours", float),
    "ONTIME_DEBOUNCE_SECONDS": ("debounce_seconds", float),
    "ONTIME_MAX_ATTEMPTS": ("max_attempts", int),
    "ONTIME_MAX_PENDING": ("max_pending_mutations", int),
    "ONTIME_REQUEST_TIMEOUT": ("request_timeout", float),
}


def _load_secrets() -> Dict[str, Any]:
    """Read the [supabase] and [ontime] sections of st.secrets, if any."""
    values: Dict[str, Any] = {}
    try:
        if "supabase" in st.secrets:
            values["supabase_url"] = st.secrets["supabase"].get("url")
            values["supabase_key"] = st.secrets["supabase"].get("key")
        if "ontime" in st.secrets:
            values.update(dict(st.secrets["ontime"]))
    except Exception as e:
        # No secrets.toml outside a Streamlit deployment
        logger.debug(f"Streamlit secrets not available: {e}")
    return values


def _coerce(name: str, raw: Any, kind: type) -> Any:
    try:
        return kind(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r}",
            config_key=name,
            expected_type=kind.__name__,
        ) from e


def _validate(settings: SyncSettings) -> SyncSettings:
    if settings.cache_version < 1:
        raise ConfigurationError("cache_version must be >= 1", config_key="cache_version")
    if settings.max_attempts < 1:
        raise ConfigurationError("max_attempts must be >= 1", config_key="max_attempts")
    if settings.max_pending_mutations < 1:
        raise ConfigurationError(
            "max_pending_mutations must be >= 1", config_key="max_pending_mutations"
        )
    if settings.freshness_hours <= 0:
        raise ConfigurationError("freshness_hours must be positive", config_key="freshness_hours")
    if settings.debounce_seconds < 0:
        raise ConfigurationError("debounce_seconds must be >= 0", config_key="debounce_seconds")
    return settings


def load_settings(
    env: Optional[Dict[str, str]] = None,
    use_secrets: bool = True,
    dotenv_path: Optional[Path] = None,
) -> SyncSettings:
    """
    Build settings from secrets and environment.

    Args:
        env: Mapping to read instead of os.environ (tests pass a dict)
        use_secrets: Whether to consult st.secrets
        dotenv_path: Explicit .env file (default: search from cwd)

    Returns:
        Validated SyncSettings

    Raises:
        ConfigurationError: a value has the wrong type or range
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = dict(os.environ)

    values: Dict[str, Any] = {}
    known = set(SyncSettings.__dataclass_fields__)

    if use_secrets:
        for key, value in _load_secrets().items():
            if key in known and value is not None:
                values[key] = value

    for var, (name, kind) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw not in (None, ""):
            values[name] = raw

    types = {name: kind for name, kind in _ENV_FIELDS.values()}
    for name, value in list(values.items()):
        if name in types:
            values[name] = _coerce(name, value, types[name])

    return _validate(SyncSettings(**values))


_settings: Optional[SyncSettings] = None


def get_settings() -> SyncSettings:
    """Get the process-wide settings (loaded once)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
