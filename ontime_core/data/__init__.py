# =============================================================================
# ontime_core/data/__init__.py
# Remote backend access
# =============================================================================

from .supabase_client import (
    RemoteBackend,
    SupabaseBackend,
    get_supabase_client,
    get_supabase_backend,
    photo_object_path,
    PHOTO_BUCKET,
)

__all__ = [
    "RemoteBackend",
    "SupabaseBackend",
    "get_supabase_client",
    "get_supabase_backend",
    "photo_object_path",
    "PHOTO_BUCKET",
]
