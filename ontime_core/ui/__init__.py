# =============================================================================
# ontime_core/ui/__init__.py
# Streamlit components for the offline sync layer
# =============================================================================

from .sync_status import (
    render_connection_badge,
    render_notifications,
    render_sync_status_panel,
    render_queue_table,
    render_failed_items,
)

__all__ = [
    "render_connection_badge",
    "render_notifications",
    "render_sync_status_panel",
    "render_queue_table",
    "render_failed_items",
]
