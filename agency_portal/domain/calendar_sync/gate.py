"""
Sync Gate - process-wide kill switch for calendar sync.

Checked before any mutating call to Google Calendar. State lives in memory
only; a restart resets it to CALENDAR_SYNC_ENABLED.
"""

import logging
from threading import Lock

from ...config import CALENDAR_SYNC_ENABLED

logger = logging.getLogger(__name__)


class SyncGate:
    """Thread-safe enabled/disabled flag"""

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._lock = Lock()

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            changed = self._enabled != enabled
            self._enabled = enabled
        if changed:
            logger.warning(f"📅 Calendar auto-sync {'ENABLED' if enabled else 'DISABLED'}")


_sync_gate = SyncGate(enabled=CALENDAR_SYNC_ENABLED)


def get_sync_gate() -> SyncGate:
    """Dependency injection for the shared SyncGate"""
    return _sync_gate


def is_sync_enabled() -> bool:
    return _sync_gate.is_enabled()


def set_sync_enabled(enabled: bool) -> None:
    _sync_gate.set_enabled(enabled)
