# =============================================================================
# app.py
# OnTime Field Tasks - Streamlit entry point
# =============================================================================
"""
Field task list that keeps working offline.

Run with:
    streamlit run app.py
"""

from __future__ import annotations
import streamlit as st

from ontime_core.config import get_settings
from ontime_core.logging import setup_logging
from ontime_core.offline import (
    NotificationInbox,
    TASK_STATUSES,
    PHOTO_TYPES,
    get_notification_dispatcher,
    get_task_service,
)
from ontime_core.ui import (
    render_connection_badge,
    render_notifications,
    render_sync_status_panel,
)

# ============================================================================
# PAGE CONFIGURATION
# ============================================================================
st.set_page_config(
    page_title="OnTime - Field Tasks",
    page_icon="🕒",
    layout="wide",
)


@st.cache_resource
def _bootstrap():
    """Wire the offline layer once per server process."""
    setup_logging(log_dir=get_settings().data_dir / "logs")
    inbox = NotificationInbox()
    get_notification_dispatcher().add_sink(inbox)
    return get_task_service(), inbox


service, inbox = _bootstrap()

st.title("🕒 OnTime Field Tasks")
render_connection_badge(service)
render_notifications(inbox)

tasks_tab, sync_tab = st.tabs(["Tasks", "Sync"])

# ============================================================================
# TASKS
# ============================================================================
with tasks_tab:
    result = service.fetch_tasks()
    if not result:
        st.error(result.error)
        tasks = []
    else:
        tasks = result.data
        if result.source == "cache":
            st.info("Offline: showing tasks saved on this device.")

    if not tasks:
        st.write("No tasks available.")

    for task in tasks:
        with st.expander(f"{task.get('title', 'Untitled')} · {task.get('status')}"):
            if task.get("description"):
                st.write(task["description"])

            current = task.get("status")
            new_status = st.selectbox(
                "Status",
                TASK_STATUSES,
                index=TASK_STATUSES.index(current) if current in TASK_STATUSES else 0,
                key=f"status_{task['id']}",
            )
            notes = st.text_input("Notes", key=f"notes_{task['id']}")
            if st.button("Update Status", key=f"update_{task['id']}") and new_status != current:
                outcome = service.update_task_status(task["id"], new_status, notes or None)
                if not outcome:
                    st.error(outcome.error)
                elif outcome.queued:
                    st.info("Saved offline; it will sync when you are back online.")
                else:
                    st.success("Status updated.")

            photo = st.file_uploader("Photo", type=["jpg", "jpeg", "png"], key=f"photo_{task['id']}")
            photo_type = st.selectbox("Photo type", PHOTO_TYPES, key=f"photo_type_{task['id']}")
            if photo is not None and st.button("Upload Photo", key=f"upload_{task['id']}"):
                outcome = service.upload_photo(task["id"], photo.getvalue(), photo.name, photo_type)
                if not outcome:
                    st.error(outcome.error)
                elif outcome.queued:
                    st.info("Photo saved offline; it will upload when you are back online.")
                else:
                    st.success("Photo uploaded.")

# ============================================================================
# SYNC
# ============================================================================
with sync_tab:
    render_sync_status_panel(service)
