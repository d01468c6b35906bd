"""
Entry points for the task/assignment mutation layer.

Handlers await these right after committing a task or assignment change.
They never raise: sync problems are logged and reported through the return
value, so the mutation that triggered them always stands.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .exceptions import ValidationError
from .schemas import SyncResult
from .service import CalendarSyncService

logger = logging.getLogger(__name__)


async def on_task_changed(
    db: Session, task_id: str, service: Optional[CalendarSyncService] = None
) -> list[SyncResult]:
    """
    Task created or updated.

    An unusable due date/time comes back as a ValidationError result for
    every assignee rather than an empty list.
    """
    service = service or CalendarSyncService(db)
    try:
        return await service.sync_task(task_id)
    except ValidationError as e:
        task = service.tasks.get_task(db, task_id)
        due = f"{task.due_date} {task.due_time!r} {task.timezone}" if task else "unknown"
        logger.warning(f"⚠️ Calendar sync rejected task {task_id} (due {due}): {e}")
        return [SyncResult.failed(task_id, a.id, e) for a in service.tasks.get_assignees(db, task_id)]
    except Exception as e:
        logger.error(f"❌ Calendar sync failed for task {task_id}: {type(e).__name__}: {e}")
        return []


async def on_task_deleted(
    db: Session, task_id: str, service: Optional[CalendarSyncService] = None
) -> list[SyncResult]:
    """Task deleted (hard or soft); removes every assignee's event"""
    service = service or CalendarSyncService(db)
    try:
        return await service.unsync_task(task_id)
    except Exception as e:
        logger.error(f"❌ Calendar cleanup failed for deleted task {task_id}: {type(e).__name__}: {e}")
        return []


async def on_assignee_added(
    db: Session, task_id: str, assignee_id: str, service: Optional[CalendarSyncService] = None
) -> Optional[SyncResult]:
    service = service or CalendarSyncService(db)
    try:
        return await service.sync_assignee(task_id, assignee_id)
    except Exception as e:
        logger.error(
            f"❌ Calendar sync failed for new assignee {assignee_id} on task {task_id}: "
            f"{type(e).__name__}: {e}"
        )
        return None


async def on_assignee_removed(
    db: Session, task_id: str, assignee_id: str, service: Optional[CalendarSyncService] = None
) -> bool:
    service = service or CalendarSyncService(db)
    try:
        return await service.unsync_assignment(task_id, assignee_id)
    except Exception as e:
        logger.error(
            f"❌ Calendar cleanup failed for removed assignee {assignee_id} on task {task_id}: "
            f"{type(e).__name__}: {e}"
        )
        return False
