# =============================================================================
# ontime_core/ui/sync_status.py
# Sync Status Panel - connectivity, queue and failed items
# =============================================================================
"""
Streamlit components showing what the offline layer is doing.

The core never draws anything itself; these functions read the service's
status dictionaries and queue DataFrame, and turn button clicks back into
service calls.
"""

from __future__ import annotations
from typing import Optional

import streamlit as st

from ontime_core.offline.notifications import (
    Notification,
    NotificationInbox,
    NotificationKind,
)
from ontime_core.offline.task_service import OfflineTaskService

_TOAST_ICONS = {
    NotificationKind.SYNC_COMPLETED: "✅",
    NotificationKind.SYNC_PARTIALLY_FAILED: "⚠️",
    NotificationKind.ITEM_FAILED: "❌",
}

_QUEUE_LABELS = {
    "id": "ID",
    "kind": "Action",
    "target": "Task",
    "status": "Status",
    "attempts": "Attempts",
    "created_at": "Queued At",
    "last_error": "Last Error",
}


def render_connection_badge(service: OfflineTaskService) -> None:
    """One-line online/offline indicator with the pending count."""
    status = service.get_status_display()
    pending = status["pending"]

    if status["connection"]["is_online"]:
        label = "🟢 Online"
    else:
        label = "🔴 Offline"
    if pending:
        label += f" · {pending} change(s) waiting to sync"
    if status["failed"]:
        label += f" · {status['failed']} need attention"

    st.caption(label)


def render_notifications(inbox: NotificationInbox) -> None:
    """Show notifications delivered since the last rerun as toasts."""
    for notification in inbox.drain():
        _toast(notification)


def _toast(notification: Notification) -> None:
    icon = _TOAST_ICONS.get(notification.kind)
    st.toast(f"**{notification.title}**\n\n{notification.body}", icon=icon)


def render_sync_status_panel(
    service: OfflineTaskService,
    inbox: Optional[NotificationInbox] = None,
) -> None:
    """
    Full sync panel: status metrics, queue table, retry/discard controls.

    Args:
        service: The task service to inspect
        inbox: Notification inbox to surface as toasts (optional)
    """
    if inbox is not None:
        render_notifications(inbox)

    status = service.get_status_display()
    connection = status["connection"]

    st.markdown("### 🔄 Offline Sync")

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Connection", "Online" if connection["is_online"] else "Offline")
    with col2:
        st.metric("Waiting to Sync", status["pending"])
    with col3:
        st.metric("Need Attention", status["failed"])

    if not status["remote_configured"]:
        st.warning(
            "Supabase is not configured; changes are kept on this device. "
            "Add a `[supabase]` section to `.streamlit/secrets.toml`."
        )

    sync = status.get("sync") or {}
    if sync.get("last_drain"):
        st.caption(f"Last sync: {sync['last_drain']} ({sync.get('last_outcome')})")

    if st.button(
        "🔁 Retry Sync",
        key="ontime_retry_sync",
        disabled=not connection["is_online"] or sync.get("is_draining", False),
        use_container_width=True,
    ):
        result = service.retry_sync()
        if result:
            report = result.data
            st.success(
                f"Synced {report['synced']}, failed {report['failed']}, "
                f"{report['remaining']} still waiting"
            )
        else:
            st.info(result.error)

    render_queue_table(service)
    render_failed_items(service)


def render_queue_table(service: OfflineTaskService) -> None:
    """Queue contents as a table."""
    df = service.queue_frame()
    if df.empty:
        st.info("Nothing waiting to sync.")
        return

    df = df[list(_QUEUE_LABELS)].rename(columns=_QUEUE_LABELS)
    st.dataframe(df, use_container_width=True, hide_index=True)


def render_failed_items(service: OfflineTaskService) -> None:
    """Per-item Retry / Discard for mutations the server rejected."""
    failed = service.list_failed()
    if not failed:
        return

    st.markdown("#### ❌ Changes that could not be synced")
    for item in failed:
        with st.container(border=True):
            st.markdown(f"**{item['kind']}** · `{item['target']}`")
            if item["last_error"]:
                st.caption(item["last_error"])

            col1, col2 = st.columns(2)
            with col1:
                if st.button("Retry", key=f"ontime_retry_{item['id']}", use_container_width=True):
                    result = service.retry_failed(item["id"])
                    if not result:
                        st.error(result.error)
                    st.rerun()
            with col2:
                if st.button("Discard", key=f"ontime_discard_{item['id']}", use_container_width=True):
                    result = service.discard_failed(item["id"])
                    if not result:
                        st.error(result.error)
                    st.rerun()
