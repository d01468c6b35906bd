"""
Calendar Sync Service
Mirrors each task's due instant into every assignee's Google Calendar.

One event per (task, assignee). Mappings make the upsert idempotent, the
SyncGate can short-circuit everything, and failures for one assignee never
affect the others or the task mutation that triggered the sync.
"""

import asyncio
import dataclasses
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from ...config import APP_BASE_URL, APP_TIMEZONE, CALENDAR_EVENT_DURATION_MINUTES
from ...models import Task
from .client import GoogleCalendarClient
from .credentials import CredentialHandle, CredentialResolver
from .exceptions import CalendarSyncError, ProviderNotFound, TaskNotFoundError
from .gate import SyncGate, get_sync_gate
from .repository import EventMappingRepository, TaskReadRepository
from .schemas import Assignee, EventSnapshot, SkipReason, SyncResult, SyncStatus, TaskSnapshot
from .time_normalizer import (
    compute_due_instant,
    compute_event_window,
    ensure_utc,
    get_zone,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[CredentialHandle], GoogleCalendarClient]

EVENT_REMINDERS = {
    "useDefault": False,
    "overrides": [
        {"method": "email", "minutes": 24 * 60},
        {"method": "popup", "minutes": 60},
    ],
}


class KeyedLocks:
    """Per-key asyncio locks, dropped once nobody holds or waits on them"""

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._users: defaultdict[tuple, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, *key):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every service instance so a rapid double-edit in this process
# cannot create two events for the same (task, assignee)
_pair_locks = KeyedLocks()


class CalendarSyncService:
    """Service layer for task -> Google Calendar sync"""

    def __init__(
        self,
        db: Session,
        gate: Optional[SyncGate] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        resolver: Optional[CredentialResolver] = None,
        client_factory: Optional[ClientFactory] = None,
        default_timezone: str = APP_TIMEZONE,
        event_duration_minutes: int = CALENDAR_EVENT_DURATION_MINUTES,
        base_url: str = APP_BASE_URL,
    ):
        self.db = db
        self.gate = gate or get_sync_gate()
        self.resolver = resolver or CredentialResolver(db, http_client=http_client)
        self.client_factory = client_factory or (
            lambda handle: GoogleCalendarClient(handle, http_client=http_client)
        )
        self.mappings = EventMappingRepository()
        self.tasks = TaskReadRepository()
        self.default_timezone = default_timezone
        self.event_duration_minutes = event_duration_minutes
        self.base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Task snapshot and event payload
    # ------------------------------------------------------------------

    def to_snapshot(self, task: Task) -> TaskSnapshot:
        """Build the sync view of a task; raises ValidationError for bad date/time input"""
        tz_name = task.timezone or self.default_timezone
        get_zone(tz_name)

        if task.due_at is not None:
            due_at = ensure_utc(task.due_at)
        else:
            due_at = compute_due_instant(task.due_date, task.due_time, tz_name)

        return TaskSnapshot(
            id=task.id,
            title=task.title,
            description=task.description,
            due_at=due_at,
            status=task.status or "in_progress",
            priority=task.priority or "medium",
            link=task.google_drive_link,
            timezone=tz_name,
        )

    def get_task_snapshot(self, task_id: str) -> TaskSnapshot:
        task = self.tasks.get_task(self.db, task_id)
        if not task:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return self.to_snapshot(task)

    def task_url(self, task_id: str) -> str:
        return f"{self.base_url}/tasks/{task_id}"

    def build_description(self, snapshot: TaskSnapshot) -> str:
        parts = []
        if snapshot.description:
            parts.append(snapshot.description.strip())
        parts.append(f"Status: {snapshot.status}")
        parts.append(f"Priority: {snapshot.priority or 'medium'}")
        if snapshot.link:
            parts.append(f"Drive Link: {snapshot.link}")
        parts.append(f"Task Link: {self.task_url(snapshot.id)}")
        return "\n\n".join(parts)

    def build_event_payload(self, snapshot: TaskSnapshot) -> dict[str, Any]:
        """Google Calendar event body; start/end are local wall-clock times with their UTC offset"""
        if snapshot.due_at is None:
            raise ValueError(f"Task {snapshot.id} has no due instant")

        zone = get_zone(snapshot.timezone)
        start, end = compute_event_window(snapshot.due_at, self.event_duration_minutes)
        return {
            "summary": snapshot.title or "Untitled Task",
            "description": self.build_description(snapshot),
            "start": {
                "dateTime": start.astimezone(zone).isoformat(timespec="seconds"),
                "timeZone": snapshot.timezone,
            },
            "end": {
                "dateTime": end.astimezone(zone).isoformat(timespec="seconds"),
                "timeZone": snapshot.timezone,
            },
            "reminders": EVENT_REMINDERS,
        }

    # ------------------------------------------------------------------
    # Upsert path
    # ------------------------------------------------------------------

    async def sync_task(self, task_id: str) -> list[SyncResult]:
        """
        Bring every assignee's event for a task up to date.

        Returns one result per current assignee. Raises TaskNotFoundError for
        unknown tasks and ValidationError for unusable due date/time input.
        """
        if not self.gate.is_enabled():
            assignees = self.tasks.get_assignees(self.db, task_id)
            logger.info(f"⏸️ Calendar sync disabled - skipping task {task_id}")
            return [SyncResult.skipped(task_id, a.id, SkipReason.DISABLED) for a in assignees]

        task = self.tasks.get_task(self.db, task_id)
        if not task:
            raise TaskNotFoundError(f"Task not found: {task_id}")

        snapshot = self.to_snapshot(task)
        assignees = self.tasks.get_assignees(self.db, task_id)
        current_ids = {a.id for a in assignees}

        # Drop events for people who are no longer on the task
        for mapping in self.mappings.list_for_task(self.db, task_id):
            if mapping.assignee_id not in current_ids:
                logger.info(f"🧹 Removing stale calendar event for {task_id}/{mapping.assignee_id}")
                await self._remove(task_id, mapping.assignee_id)

        if task.deleted_at is not None or not snapshot.is_calendar_eligible or not assignees:
            if task.deleted_at is None and not snapshot.is_calendar_eligible:
                logger.info(f"ℹ️ Calendar sync skipped - no due instant for task {task_id}")
            # The task may have lost its due time since the last sync
            for assignee in assignees:
                if self.mappings.get(self.db, task_id, assignee.id):
                    await self._remove(task_id, assignee.id)
            return [SyncResult.skipped(task_id, a.id, SkipReason.NOT_ELIGIBLE) for a in assignees]

        payload = self.build_event_payload(snapshot)
        results = await self._fan_out(
            task_id, [self._upsert(snapshot, assignee, payload) for assignee in assignees], assignees
        )
        self.log_results(results)
        return results

    async def sync_assignee(self, task_id: str, assignee_id: str) -> SyncResult:
        """Sync a single (task, assignee) pair, e.g. right after an assignment is added"""
        if not self.gate.is_enabled():
            return SyncResult.skipped(task_id, assignee_id, SkipReason.DISABLED)

        task = self.tasks.get_task(self.db, task_id)
        if not task:
            raise TaskNotFoundError(f"Task not found: {task_id}")

        snapshot = self.to_snapshot(task)
        if task.deleted_at is not None or not snapshot.is_calendar_eligible:
            return SyncResult.skipped(task_id, assignee_id, SkipReason.NOT_ELIGIBLE)

        assignee = self.tasks.get_assignee(self.db, assignee_id) or Assignee(id=assignee_id)
        payload = self.build_event_payload(snapshot)
        results = await self._fan_out(task_id, [self._upsert(snapshot, assignee, payload)], [assignee])
        self.log_results(results)
        return results[0]

    async def _fan_out(self, task_id: str, operations: list, assignees: list[Assignee]) -> list[SyncResult]:
        outcomes = await asyncio.gather(*operations, return_exceptions=True)
        results = []
        for assignee, outcome in zip(assignees, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    f"❌ Unexpected calendar sync error for {task_id}/{assignee.id}",
                    exc_info=outcome,
                )
                outcome = SyncResult.failed(task_id, assignee.id, outcome)
            results.append(outcome)
        return results

    async def _upsert(self, snapshot: TaskSnapshot, assignee: Assignee, payload: dict) -> SyncResult:
        task_id = snapshot.id
        async with _pair_locks.hold(task_id, assignee.id):
            try:
                handle = await self.resolver.resolve(assignee.id)
            except CalendarSyncError as e:
                logger.warning(f"⚠️ No usable calendar credentials for {assignee.id}: {e}")
                return SyncResult.failed(task_id, assignee.id, e)

            try:
                return await self._write_event(task_id, assignee.id, handle, payload)
            except CalendarSyncError as e:
                logger.warning(f"⚠️ Calendar sync failed for {task_id}/{assignee.id}: {e}")
                return SyncResult.failed(task_id, assignee.id, e)

    async def _write_event(
        self, task_id: str, assignee_id: str, handle: CredentialHandle, payload: dict
    ) -> SyncResult:
        action = "created"
        mapping = self.mappings.get(self.db, task_id, assignee_id)
        if mapping:
            event_id, calendar_id = mapping.external_event_id, mapping.calendar_id
            client = self.client_factory(dataclasses.replace(handle, calendar_id=calendar_id))
            try:
                await client.update(event_id, payload)
                self.mappings.put(self.db, task_id, assignee_id, event_id, calendar_id)
                return SyncResult.ok(task_id, assignee_id, event_id, "updated")
            except ProviderNotFound:
                logger.info(f"🔁 Event {event_id} vanished for {task_id}/{assignee_id}, recreating")
                action = "recreated"

        client = self.client_factory(handle)
        event_id = await client.create(payload)
        self.mappings.put(self.db, task_id, assignee_id, event_id, handle.calendar_id)
        return SyncResult.ok(task_id, assignee_id, event_id, action)

    # ------------------------------------------------------------------
    # Deletion path
    # ------------------------------------------------------------------

    async def unsync_assignment(self, task_id: str, assignee_id: str) -> bool:
        """
        Remove the event for one (task, assignee) pair.

        Returns True when the calendar is consistent afterwards (event deleted,
        already gone, or never created); False when sync is disabled or the
        remote delete failed. The mapping is dropped either way once attempted.
        """
        if not self.gate.is_enabled():
            logger.info(f"⏸️ Calendar sync disabled - not removing event for {task_id}/{assignee_id}")
            return False
        result = await self._remove(task_id, assignee_id)
        return result.status == SyncStatus.OK

    async def unsync_task(self, task_id: str) -> list[SyncResult]:
        """Remove every event created for a task (the task row may already be gone)"""
        mappings = self.mappings.list_for_task(self.db, task_id)
        if not self.gate.is_enabled():
            return [SyncResult.skipped(task_id, m.assignee_id, SkipReason.DISABLED) for m in mappings]

        assignee_ids = [m.assignee_id for m in mappings]
        results = await self._fan_out(
            task_id,
            [self._remove(task_id, assignee_id) for assignee_id in assignee_ids],
            [Assignee(id=assignee_id) for assignee_id in assignee_ids],
        )
        self.log_results(results)
        return results

    async def _remove(self, task_id: str, assignee_id: str) -> SyncResult:
        async with _pair_locks.hold(task_id, assignee_id):
            mapping = self.mappings.get(self.db, task_id, assignee_id)
            if not mapping:
                return SyncResult.ok(task_id, assignee_id, None, "noop")

            event_id, calendar_id = mapping.external_event_id, mapping.calendar_id
            try:
                handle = await self.resolver.resolve(assignee_id)
                client = self.client_factory(dataclasses.replace(handle, calendar_id=calendar_id))
                await client.delete(event_id)
                result = SyncResult.ok(task_id, assignee_id, event_id, "deleted")
            except CalendarSyncError as e:
                logger.warning(
                    f"⚠️ Could not delete calendar event {event_id} for {task_id}/{assignee_id}: {e}"
                )
                result = SyncResult.failed(task_id, assignee_id, e)
            finally:
                # Dropped even when the remote delete failed, so it is never retried
                self.mappings.remove(self.db, task_id, assignee_id)
            return result

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def fetch_event(self, task_id: str, assignee_id: str) -> Optional[EventSnapshot]:
        """Read back the event mapped to a pair; None if unmapped or gone on Google"""
        mapping = self.mappings.get(self.db, task_id, assignee_id)
        if not mapping:
            return None
        return await self.get_remote_event(assignee_id, mapping.external_event_id, mapping.calendar_id)

    async def get_remote_event(
        self, assignee_id: str, event_id: str, calendar_id: str = "primary"
    ) -> Optional[EventSnapshot]:
        handle = await self.resolver.resolve(assignee_id)
        client = self.client_factory(dataclasses.replace(handle, calendar_id=calendar_id))
        try:
            return await client.get(event_id)
        except ProviderNotFound:
            return None

    @staticmethod
    def log_results(results: list[SyncResult]) -> None:
        for result in results:
            if result.status == SyncStatus.FAILED:
                logger.warning(
                    f"⚠️ Calendar sync {result.task_id}/{result.assignee_id}: "
                    f"{result.error_type}: {result.error}"
                )
            else:
                detail = result.action or (result.reason.value if result.reason else "")
                logger.info(
                    f"📅 Calendar sync {result.task_id}/{result.assignee_id}: "
                    f"{result.status.value} {detail} {result.event_id or ''}".rstrip()
                )
