# =============================================================================
# ontime_core/offline/connection_manager.py
# Connectivity Monitoring with Debounced Transitions
# =============================================================================
"""
ConnectivityMonitor - observes the runtime's online/offline signal.

Features:
- Raw signal pushed by the host (``report``) or polled from a probe
- Transitions committed only after the signal is stable for the debounce window
- Handlers called once per committed transition, each returning an
  unsubscribe handle
- Optional background polling thread
"""

from __future__ import annotations
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from ontime_core.logging import get_logger

logger = get_logger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"     # Nothing observed yet


@dataclass
class ConnectionState:
    """Committed connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    last_change: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class Subscription:
    """
    Handle returned by ``ConnectivityMonitor.on_change``.

    Release it when the subscriber goes away, either explicitly or by
    using it as a context manager.
    """

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._release()
            self.active = False

    __call__ = unsubscribe

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.unsubscribe()
        return False


def default_probe(supabase_url: Optional[str] = None, timeout: float = 5.0) -> bool:
    """
    TCP reachability check of public DNS hosts and the Supabase host.

    Returns:
        True when the internet (and Supabase, if configured) is reachable
    """
    hosts = [
        ("8.8.8.8", 53),
        ("1.1.1.1", 53),
        ("208.67.222.222", 53),
    ]

    def reachable(host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    if not any(reachable(host, port) for host, port in hosts):
        return False

    if supabase_url:
        parsed = urlparse(supabase_url)
        if parsed.hostname:
            return reachable(parsed.hostname, parsed.port or 443)
    return True


class ConnectivityMonitor:
    """
    Debounced online/offline state.

    Usage:
        monitor = ConnectivityMonitor(debounce_seconds=2.0)
        sub = monitor.on_change(lambda online: print("online" if online else "offline"))
        monitor.report(True)      # host environment pushes the signal
        ...
        sub.unsubscribe()
    """

    _instance: Optional[ConnectivityMonitor] = None
    _lock = threading.Lock()

    DEBOUNCE_SECONDS = 2.0
    CHECK_INTERVAL_ONLINE = 30
    CHECK_INTERVAL_OFFLINE = 10
    CONNECTION_TIMEOUT = 5

    def __init__(
        self,
        probe: Optional[Callable[[], bool]] = None,
        debounce_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_commit: bool = True,
        check_interval_online: Optional[float] = None,
        check_interval_offline: Optional[float] = None,
    ):
        """
        Args:
            probe: Callable returning the raw connectivity signal
            debounce_seconds: Stability window before a transition is committed
            clock: Monotonic seconds source (tests inject a fake)
            auto_commit: Commit pending transitions from a timer; when False the
                caller drives ``evaluate()``
            check_interval_online: Polling interval while online
            check_interval_offline: Polling interval while offline
        """
        self._probe = probe or (lambda: default_probe(timeout=self.CONNECTION_TIMEOUT))
        self.debounce_seconds = (
            self.DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self._clock = clock
        self._auto_commit = auto_commit
        self.check_interval_online = check_interval_online or self.CHECK_INTERVAL_ONLINE
        self.check_interval_offline = check_interval_offline or self.CHECK_INTERVAL_OFFLINE

        self._state = ConnectionState()
        self._candidate: Optional[bool] = None
        self._candidate_since: float = 0.0
        self._handlers: Dict[int, Callable[[bool], None]] = {}
        self._next_handler_id = 0
        self._guard = threading.RLock()
        self._commit_timer: Optional[threading.Timer] = None
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()

    @classmethod
    def get_instance(cls, **kwargs) -> ConnectivityMonitor:
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = ConnectivityMonitor(**kwargs)
        return cls._instance

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    def is_online(self) -> bool:
        """Current committed snapshot."""
        return self._state.status == ConnectionStatus.ONLINE

    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def on_change(self, handler: Callable[[bool], None]) -> Subscription:
        """
        Register a handler called with the new online flag after each
        debounced transition.

        Returns:
            Subscription whose ``unsubscribe()`` removes the handler
        """
        with self._guard:
            handler_id = self._next_handler_id
            self._next_handler_id += 1
            self._handlers[handler_id] = handler

        def release() -> None:
            with self._guard:
                self._handlers.pop(handler_id, None)

        return Subscription(release)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def _notify_handlers(self, online: bool) -> None:
        with self._guard:
            handlers = list(self._handlers.values())
        for handler in handlers:
            try:
                handler(online)
            except Exception as e:
                logger.error(f"Error in connectivity handler: {e}", exc_info=True)

    # =========================================================================
    # SIGNAL HANDLING
    # =========================================================================

    def report(self, online: bool) -> None:
        """
        Feed one observation of the runtime's connectivity signal.

        The first observation is committed immediately; later changes are
        committed once the signal has held for the debounce window.
        """
        online = bool(online)
        now = self._clock()

        with self._guard:
            self._state.last_check = datetime.now()
            if online:
                self._state.consecutive_failures = 0
            else:
                self._state.consecutive_failures += 1

            if self._state.status == ConnectionStatus.UNKNOWN:
                self._candidate = online
                self._candidate_since = now
                committed = self._commit(online)
            else:
                if online != self._candidate:
                    self._candidate = online
                    self._candidate_since = now
                    if online != self.is_online():
                        self._schedule_commit()
                committed = None

        if committed is not None:
            self._notify_handlers(committed)
        else:
            self.evaluate()

    def evaluate(self) -> Optional[bool]:
        """
        Commit the pending transition if the signal has been stable long enough.

        Returns:
            The new online flag when a transition was committed, else None
        """
        with self._guard:
            if self._candidate is None or self._candidate == self.is_online():
                return None
            if self._clock() - self._candidate_since < self.debounce_seconds:
                return None
            committed = self._commit(self._candidate)

        self._notify_handlers(committed)
        return committed

    def _commit(self, online: bool) -> bool:
        old_status = self._state.status
        self._state.status = ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE
        self._state.last_change = datetime.now()
        if online:
            self._state.last_online = self._state.last_change
            self._state.error_message = None
        logger.info(f"Connection status changed: {old_status.value} -> {self._state.status.value}")
        return online

    def _schedule_commit(self) -> None:
        if not self._auto_commit:
            return
        if self._commit_timer is not None:
            self._commit_timer.cancel()
        # A little past the window so the clock check passes
        self._commit_timer = threading.Timer(self.debounce_seconds + 0.05, self.evaluate)
        self._commit_timer.daemon = True
        self._commit_timer.start()

    def check_connection(self) -> ConnectionState:
        """Run the probe once and feed its result."""
        try:
            online = bool(self._probe())
        except Exception as e:
            self._state.error_message = str(e)
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        self.report(online)
        return self._state

    def force_offline(self) -> None:
        """Commit offline immediately (user preference or test)."""
        with self._guard:
            was_online = self.is_online()
            self._candidate = False
            self._candidate_since = self._clock()
            self._commit(False)
        if was_online:
            self._notify_handlers(False)
        logger.info("Forced offline mode")

    # =========================================================================
    # BACKGROUND POLLING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background polling of the probe."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectivityMonitor",
        )
        self._monitor_thread.start()
        logger.debug("Connectivity monitoring started")

    def stop_monitoring(self) -> None:
        """Stop polling and cancel any pending commit timer."""
        self._stop_monitoring.set()
        if self._commit_timer is not None:
            self._commit_timer.cancel()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
        logger.debug("Connectivity monitoring stopped")

    def _monitoring_loop(self) -> None:
        while not self._stop_monitoring.is_set():
            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

            interval = (
                self.check_interval_online if self.is_online()
                else self.check_interval_offline
            )
            if self._stop_monitoring.wait(timeout=interval):
                break

    def get_status_display(self) -> dict:
        """Status information for UI display."""
        state = self._state
        return {
            "status": state.status.value,
            "is_online": self.is_online(),
            "last_check": state.last_check.isoformat() if state.last_check else None,
            "last_online": state.last_online.isoformat() if state.last_online else None,
            "last_change": state.last_change.isoformat() if state.last_change else None,
            "failures": state.consecutive_failures,
            "error": state.error_message,
            "subscribers": self.subscriber_count,
        }


# Singleton accessor
_connectivity_monitor: Optional[ConnectivityMonitor] = None


def get_connectivity_monitor(start_monitoring: bool = True) -> ConnectivityMonitor:
    """Get the global ConnectivityMonitor built from settings."""
    global _connectivity_monitor
    if _connectivity_monitor is None:
        from ontime_core.config import get_settings

        settings = get_settings()
        _connectivity_monitor = ConnectivityMonitor.get_instance(
            probe=lambda: default_probe(settings.supabase_url, settings.connection_timeout),
            debounce_seconds=settings.debounce_seconds,
            check_interval_online=settings.check_interval_online,
            check_interval_offline=settings.check_interval_offline,
        )
        if start_monitoring:
            _connectivity_monitor.start_monitoring()
    return _connectivity_monitor
