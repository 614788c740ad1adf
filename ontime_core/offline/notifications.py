# =============================================================================
# ontime_core/offline/notifications.py
# Best-effort user notifications for sync outcomes
# =============================================================================
"""
NotificationDispatcher - tells the user what happened to their queued work.

Features:
- Three notification kinds: sync completed, sync partially failed, item failed
- Titled/bodied notifications with a tag and "View Task" / "Close" actions
- Delivery on a worker thread; ``notify`` never blocks and never raises
- Pluggable sinks (log, in-memory inbox for the Streamlit page, custom)
"""

from __future__ import annotations
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ontime_core.logging import get_logger

logger = get_logger(__name__)

NOTIFICATION_TAG = "ontime-notification"


class NotificationKind(Enum):
    SYNC_COMPLETED = "SyncCompleted"
    SYNC_PARTIALLY_FAILED = "SyncPartiallyFailed"
    ITEM_FAILED = "ItemFailed"


@dataclass(frozen=True)
class NotificationAction:
    action: str
    title: str


DEFAULT_ACTIONS: Tuple[NotificationAction, ...] = (
    NotificationAction("view", "View Task"),
    NotificationAction("close", "Close"),
)


@dataclass
class Notification:
    """A titled alert ready for whatever surface displays it."""
    kind: NotificationKind
    title: str
    body: str
    details: Dict[str, Any] = field(default_factory=dict)
    tag: str = NOTIFICATION_TAG
    actions: Tuple[NotificationAction, ...] = DEFAULT_ACTIONS
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "body": self.body,
            "details": self.details,
            "tag": self.tag,
            "actions": [{"action": a.action, "title": a.title} for a in self.actions],
            "created_at": self.created_at.isoformat(),
        }


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def build_notification(kind: NotificationKind, details: Optional[Dict[str, Any]] = None) -> Notification:
    """Turn a sync outcome into display text."""
    details = dict(details or {})

    if kind is NotificationKind.SYNC_COMPLETED:
        synced = details.get("synced", 0)
        title = "Sync complete"
        body = f"{_plural(synced, 'offline change')} synced."
    elif kind is NotificationKind.SYNC_PARTIALLY_FAILED:
        synced = details.get("synced", 0)
        failed = details.get("failed", 0)
        title = "Sync finished with problems"
        body = f"{synced} synced, {failed} need your attention."
    else:
        what = details.get("kind", "Change")
        target = details.get("target", "")
        error = details.get("error") or "rejected by the server"
        title = "Change could not be synced"
        body = f"{what} {target}: {error}".replace("  ", " ").strip()

    return Notification(kind=kind, title=title, body=body, details=details)


Sink = Callable[[Notification], None]


def logging_sink(notification: Notification) -> None:
    """Default sink: write the notification to the log."""
    logger.info(f"[{notification.kind.value}] {notification.title}: {notification.body}")


class NotificationInbox:
    """
    Bounded in-memory sink.

    Streamlit can only draw from the script thread, so the page drains this
    on each rerun and shows the entries as toasts.
    """

    def __init__(self, maxlen: int = 50):
        self._items: Deque[Notification] = deque(maxlen=maxlen)
        self._guard = threading.Lock()

    def __call__(self, notification: Notification) -> None:
        with self._guard:
            self._items.append(notification)

    def drain(self) -> List[Notification]:
        with self._guard:
            items = list(self._items)
            self._items.clear()
        return items

    def __len__(self) -> int:
        return len(self._items)


class NotificationDispatcher:
    """
    Fire-and-forget delivery of sync notifications.

    Usage:
        dispatcher = NotificationDispatcher(sinks=[logging_sink, inbox])
        dispatcher.notify(NotificationKind.SYNC_COMPLETED, {"synced": 3})
    """

    _instance: Optional[NotificationDispatcher] = None
    _lock = threading.Lock()

    MAX_QUEUE = 100

    def __init__(
        self,
        sinks: Optional[List[Sink]] = None,
        asynchronous: bool = True,
        max_queue: Optional[int] = None,
    ):
        """
        Args:
            sinks: Delivery targets (default: log only)
            asynchronous: Deliver from a worker thread; False delivers inline
                (still swallowing sink errors)
            max_queue: Notifications waiting beyond this are dropped
        """
        self._sinks: List[Sink] = list(sinks) if sinks is not None else [logging_sink]
        self._asynchronous = asynchronous
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue or self.MAX_QUEUE)
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._sinks_guard = threading.Lock()
        self.delivered_count = 0
        self.dropped_count = 0

    @classmethod
    def get_instance(cls, **kwargs) -> NotificationDispatcher:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = NotificationDispatcher(**kwargs)
        return cls._instance

    # =========================================================================
    # SINKS
    # =========================================================================

    def add_sink(self, sink: Sink) -> None:
        with self._sinks_guard:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def remove_sink(self, sink: Sink) -> None:
        with self._sinks_guard:
            if sink in self._sinks:
                self._sinks.remove(sink)

    # =========================================================================
    # DELIVERY
    # =========================================================================

    def notify(self, kind: NotificationKind, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Queue a notification for delivery.

        Returns:
            False if the notification could not be queued; never raises
        """
        try:
            notification = build_notification(kind, details)
            if not self._asynchronous:
                self._deliver(notification)
                return True

            self._ensure_worker()
            self._queue.put_nowait(notification)
            return True
        except queue.Full:
            self.dropped_count += 1
            logger.warning(f"Notification queue full; dropped {kind.value}")
            return False
        except Exception as e:
            logger.error(f"Could not dispatch {kind}: {e}", exc_info=True)
            return False

    def _deliver(self, notification: Notification) -> None:
        with self._sinks_guard:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(notification)
            except Exception as e:
                logger.error(f"Notification sink failed: {e}", exc_info=True)
        self.delivered_count += 1

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop.clear()
            self._worker = threading.Thread(
                target=self._run,
                daemon=True,
                name="NotificationDispatcher",
            )
            self._worker.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                notification = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._deliver(notification)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """
        Wait until every queued notification has been delivered.

        Returns:
            True if the queue emptied within the timeout
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the worker."""
        self.flush(timeout)
        self._stop.set()
        if self._worker:
            self._worker.join(timeout=timeout)


# Singleton accessor
_notification_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the global NotificationDispatcher."""
    global _notification_dispatcher
    if _notification_dispatcher is None:
        _notification_dispatcher = NotificationDispatcher.get_instance()
    return _notification_dispatcher
