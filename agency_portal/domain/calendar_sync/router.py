"""Calendar sync router - admin and diagnostic endpoints"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ...config import CALENDAR_ADMIN_TOKEN
from ...database import get_db
from .exceptions import TaskNotFoundError, ValidationError
from .gate import SyncGate, get_sync_gate
from .repository import EventMappingRepository
from .schemas import (
    EventMappingResponse,
    EventPayloadResponse,
    SelfTestReport,
    SelfTestRequest,
    SyncResult,
    SyncToggleResponse,
    UnsyncResponse,
)
from .self_test import CalendarSelfTest
from .service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar-sync", tags=["calendar-sync"])

security = HTTPBearer(auto_error=False)


def get_admin_token() -> Optional[str]:
    return CALENDAR_ADMIN_TOKEN


def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    admin_token: Optional[str] = Depends(get_admin_token),
) -> None:
    """Bearer-token guard; the routes stay closed until CALENDAR_ADMIN_TOKEN is set"""
    if not admin_token:
        raise HTTPException(status_code=403, detail="Calendar admin routes are not configured")
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not secrets.compare_digest(credentials.credentials.encode(), admin_token.encode()):
        logger.warning("⚠️ Rejected calendar admin request with invalid token")
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_calendar_sync_service(
    db: Session = Depends(get_db), gate: SyncGate = Depends(get_sync_gate)
) -> CalendarSyncService:
    """Dependency injection for CalendarSyncService"""
    return CalendarSyncService(db, gate=gate)


# ============================================================================
# KILL SWITCH
# ============================================================================


@router.get("/status", response_model=SyncToggleResponse, dependencies=[Depends(require_admin)])
async def get_sync_status(gate: SyncGate = Depends(get_sync_gate)):
    """Whether automatic calendar sync is enabled"""
    return SyncToggleResponse(enabled=gate.is_enabled())


@router.post("/enable", response_model=SyncToggleResponse, dependencies=[Depends(require_admin)])
async def enable_sync(gate: SyncGate = Depends(get_sync_gate)):
    gate.set_enabled(True)
    return SyncToggleResponse(enabled=True)


@router.post("/disable", response_model=SyncToggleResponse, dependencies=[Depends(require_admin)])
async def disable_sync(gate: SyncGate = Depends(get_sync_gate)):
    gate.set_enabled(False)
    return SyncToggleResponse(enabled=False)


# ============================================================================
# TASK SYNC
# ============================================================================


@router.post(
    "/tasks/{task_id}/sync",
    response_model=list[SyncResult],
    dependencies=[Depends(require_admin)],
)
async def resync_task(task_id: str, service: CalendarSyncService = Depends(get_calendar_sync_service)):
    """Re-run sync for a task (the "retry sync" action)"""
    try:
        return await service.sync_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.delete(
    "/tasks/{task_id}/assignees/{assignee_id}",
    response_model=UnsyncResponse,
    dependencies=[Depends(require_admin)],
)
async def unsync_assignment(
    task_id: str,
    assignee_id: str,
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Remove one assignee's event for a task"""
    success = await service.unsync_assignment(task_id, assignee_id)
    return UnsyncResponse(task_id=task_id, assignee_id=assignee_id, success=success)


@router.get(
    "/tasks/{task_id}/mappings",
    response_model=list[EventMappingResponse],
    dependencies=[Depends(require_admin)],
)
async def list_task_mappings(task_id: str, db: Session = Depends(get_db)):
    return EventMappingRepository.list_for_task(db, task_id)


@router.get(
    "/tasks/{task_id}/payload",
    response_model=EventPayloadResponse,
    dependencies=[Depends(require_admin)],
)
async def get_computed_payload(
    task_id: str, service: CalendarSyncService = Depends(get_calendar_sync_service)
):
    """The event that sync would send for a task, without calling Google"""
    try:
        snapshot = service.get_task_snapshot(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if not snapshot.is_calendar_eligible:
        raise HTTPException(status_code=400, detail="Task has no due time and is not synced")

    payload = service.build_event_payload(snapshot)
    return EventPayloadResponse(
        task_id=task_id,
        timezone=snapshot.timezone,
        start_local=payload["start"]["dateTime"],
        end_local=payload["end"]["dateTime"],
        summary=payload["summary"],
        description=payload["description"],
        payload=payload,
    )


# ============================================================================
# SELF-TEST
# ============================================================================


@router.post("/self-test", response_model=SelfTestReport, dependencies=[Depends(require_admin)])
async def run_self_test(
    data: SelfTestRequest,
    db: Session = Depends(get_db),
    service: CalendarSyncService = Depends(get_calendar_sync_service),
):
    """Create, move and delete a throwaway task and check Google followed along"""
    report = await CalendarSelfTest(db, service=service).run(data.email, data.timezone)
    if report.ok:
        logger.info(f"✅ Calendar self-test passed for {data.email}")
    else:
        logger.warning(f"⚠️ Calendar self-test failed for {data.email}: {report.error}")
    return report
