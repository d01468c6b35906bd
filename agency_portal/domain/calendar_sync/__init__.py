"""
Calendar Sync Domain

Mirrors task due times into each assignee's Google Calendar.

- time_normalizer.py   wall-clock <-> UTC instants
- credentials.py       account resolution and OAuth token refresh
- client.py            Google Calendar events API
- repository.py        (task, assignee) -> event mappings
- gate.py              process-wide kill switch
- service.py           sync orchestration
- hooks.py             entry points for task/assignment mutations
- self_test.py         end-to-end self-test
- router.py            admin endpoints (/calendar-sync)
- oauth_router.py      Google OAuth connect flow (/google-calendar)
"""

from .gate import is_sync_enabled, set_sync_enabled
from .hooks import on_assignee_added, on_assignee_removed, on_task_changed, on_task_deleted
from .service import CalendarSyncService

__all__ = [
    "CalendarSyncService",
    "is_sync_enabled",
    "on_assignee_added",
    "on_assignee_removed",
    "on_task_changed",
    "on_task_deleted",
    "set_sync_enabled",
]
