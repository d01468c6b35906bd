"""Calendar sync schemas - Pydantic models for sync inputs, results and API payloads"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class TaskSnapshot(BaseModel):
    """Read-only view of a task with exactly what calendar sync needs"""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: Optional[str] = None
    due_at: Optional[datetime] = None  # canonical UTC instant
    status: str = "in_progress"
    priority: Optional[str] = "medium"
    link: Optional[str] = None  # external reference (Drive folder etc.)
    timezone: str

    @property
    def is_calendar_eligible(self) -> bool:
        return self.due_at is not None


class Assignee(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str  # roster id (team member) or canonical account id
    email: Optional[str] = None


class SyncStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    DISABLED = "disabled"
    NOT_ELIGIBLE = "not-eligible"


class SyncResult(BaseModel):
    """Outcome of syncing one (task, assignee) pair"""

    task_id: str
    assignee_id: str
    status: SyncStatus
    event_id: Optional[str] = None
    action: Optional[str] = None  # created, updated, recreated, deleted, noop
    reason: Optional[SkipReason] = None
    error_type: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, task_id: str, assignee_id: str, event_id: Optional[str], action: str) -> "SyncResult":
        return cls(
            task_id=task_id,
            assignee_id=assignee_id,
            status=SyncStatus.OK,
            event_id=event_id,
            action=action,
        )

    @classmethod
    def skipped(cls, task_id: str, assignee_id: str, reason: SkipReason) -> "SyncResult":
        return cls(task_id=task_id, assignee_id=assignee_id, status=SyncStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, task_id: str, assignee_id: str, error: Exception) -> "SyncResult":
        return cls(
            task_id=task_id,
            assignee_id=assignee_id,
            status=SyncStatus.FAILED,
            error_type=type(error).__name__,
            error=str(error),
        )


class EventSnapshot(BaseModel):
    """An event as currently stored by Google Calendar"""

    event_id: str
    summary: Optional[str] = None
    description: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timezone: Optional[str] = None
    html_link: Optional[str] = None
    status: Optional[str] = None


class EventPayloadResponse(BaseModel):
    """Computed event for a task, without calling Google"""

    task_id: str
    timezone: str
    start_local: str
    end_local: str
    summary: str
    description: str
    payload: dict


class SyncToggleResponse(BaseModel):
    enabled: bool


class EventMappingResponse(BaseModel):
    task_id: str
    assignee_id: str
    external_event_id: str
    calendar_id: str
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UnsyncResponse(BaseModel):
    task_id: str
    assignee_id: str
    success: bool


class SelfTestRequest(BaseModel):
    email: str
    timezone: str = "America/Vancouver"

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must be a valid address")
        return v


class SelfTestStep(BaseModel):
    ok: bool
    event_id: Optional[str] = None
    event_id_unchanged: Optional[bool] = None
    start_local: Optional[str] = None
    event_deleted: Optional[bool] = None
    mapping_removed: Optional[bool] = None
    error: Optional[str] = None


class SelfTestReport(BaseModel):
    ok: bool
    timezone: str
    task_id: Optional[str] = None
    create: Optional[SelfTestStep] = None
    update: Optional[SelfTestStep] = None
    delete: Optional[SelfTestStep] = None
    logs: list[str] = []
    error: Optional[str] = None


class OAuthCallbackRequest(BaseModel):
    code: str
    state: str  # canonical account id the authorization was started for


class CredentialStatusResponse(BaseModel):
    connected: bool
    account_id: str
    user_email: Optional[str] = None
    calendar_id: Optional[str] = None
    scope: Optional[str] = None
    token_expires_at: Optional[datetime] = None
