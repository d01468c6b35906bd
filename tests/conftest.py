"""Shared fixtures: in-memory database and a fake Google Calendar served over httpx.MockTransport."""

from __future__ import annotations

import itertools
import json
import os
from datetime import date, timedelta
from typing import Optional
from urllib.parse import parse_qs, unquote

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ.setdefault("GOOGLE_CLIENT_ID", "client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "client-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agency_portal import models, models_google_calendar  # noqa: E402, F401
from agency_portal.database import Base  # noqa: E402
from agency_portal.domain.calendar_sync.credentials import CredentialStore  # noqa: E402
from agency_portal.domain.calendar_sync.gate import SyncGate  # noqa: E402
from agency_portal.domain.calendar_sync.service import CalendarSyncService  # noqa: E402
from agency_portal.domain.calendar_sync.time_normalizer import (  # noqa: E402
    compute_due_instant,
    utcnow,
)
from agency_portal.models import Task, TaskAssignment, TeamMember, User  # noqa: E402

VANCOUVER = "America/Vancouver"
CALENDAR_PREFIX = "/calendar/v3/calendars/"


class FakeGoogleCalendar:
    """Just enough of Google's token and Calendar v3 endpoints to drive sync end to end."""

    def __init__(self):
        self.events: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.valid_refresh_tokens: set[str] = set()
        self.rejected_access_tokens: set[str] = set()
        # method -> status code returned for every call of that method on events
        self.failures: dict[str, int] = {}
        self.raise_on: dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

    # -- inspection helpers -------------------------------------------------

    def calls_for(self, method: str) -> list[str]:
        return [path for m, path in self.calls if m == method and path.startswith(CALENDAR_PREFIX)]

    def all_events(self) -> dict[str, dict]:
        merged = {}
        for calendar in self.events.values():
            merged.update(calendar)
        return merged

    def drop_event(self, event_id: str) -> None:
        """Simulate someone deleting the event directly in Google Calendar"""
        for calendar in self.events.values():
            calendar.pop(event_id, None)

    # -- transport ------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if request.url.host == "oauth2.googleapis.com":
            return self._token(request)
        if path == "/oauth2/v2/userinfo":
            return httpx.Response(200, json={"email": "calendar-owner@example.com"})
        if path.endswith("/calendarList/primary"):
            return httpx.Response(200, json={"id": "calendar-owner@example.com"})
        if path.startswith(CALENDAR_PREFIX):
            return self._events(request)
        return httpx.Response(404, json={"error": {"message": "unknown endpoint"}})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/revoke":
            return httpx.Response(200)
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "authorization_code":
            return httpx.Response(
                200,
                json={
                    "access_token": "oauth-access",
                    "refresh_token": "oauth-refresh",
                    "expires_in": 3599,
                    "scope": "https://www.googleapis.com/auth/calendar.events",
                },
            )
        if form.get("refresh_token") in self.valid_refresh_tokens:
            return httpx.Response(
                200, json={"access_token": f"fresh-access-{next(self._tokens)}", "expires_in": 3600}
            )
        return httpx.Response(400, json={"error": "invalid_grant"})

    def _events(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        if method in self.raise_on:
            raise self.raise_on[method]
        if method in self.failures:
            return httpx.Response(self.failures[method], json={"error": {"message": "backend error"}})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected_access_tokens:
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        parts = request.url.path[len(CALENDAR_PREFIX):].split("/")
        calendar_id = unquote(parts[0])
        event_id = unquote(parts[2]) if len(parts) > 2 else None
        calendar = self.events.setdefault(calendar_id, {})

        if method == "POST":
            event = json.loads(request.content)
            event["id"] = f"evt-{next(self._ids)}"
            event["htmlLink"] = f"https://calendar.google.com/event?eid={event['id']}"
            event["status"] = "confirmed"
            calendar[event["id"]] = event
            return httpx.Response(200, json=event)

        if event_id not in calendar:
            return httpx.Response(404, json={"error": {"message": "Not Found"}})

        if method == "PUT":
            event = json.loads(request.content)
            event.update(id=event_id, htmlLink=calendar[event_id]["htmlLink"], status="confirmed")
            calendar[event_id] = event
            return httpx.Response(200, json=event)
        if method == "DELETE":
            del calendar[event_id]
            return httpx.Response(204)
        return httpx.Response(200, json=calendar[event_id])


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
def http_client(fake_google) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler))


@pytest.fixture
def gate() -> SyncGate:
    return SyncGate(enabled=True)


@pytest.fixture
def service(db, gate, http_client) -> CalendarSyncService:
    return CalendarSyncService(
        db,
        gate=gate,
        http_client=http_client,
        default_timezone=VANCOUVER,
        base_url="https://portal.test",
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_user(db, email: str) -> User:
    user = User(email=email, full_name=email.split("@")[0])
    db.add(user)
    db.commit()
    return user


def make_member(db, email: str, user: Optional[User] = None) -> TeamMember:
    member = TeamMember(name=email.split("@")[0], email=email, user_id=user.id if user else None)
    db.add(member)
    db.commit()
    return member


def make_task(
    db,
    title: str = "Shoot product photos",
    due_date: Optional[date] = date(2025, 3, 10),
    due_time: Optional[str] = "14:30",
    tz_name: str = VANCOUVER,
    **fields,
) -> Task:
    task = Task(
        title=title,
        due_date=due_date,
        due_time=due_time,
        timezone=tz_name,
        due_at=compute_due_instant(due_date, due_time, tz_name) if due_date else None,
        **fields,
    )
    db.add(task)
    db.commit()
    return task


def assign(db, task: Task, member: TeamMember) -> TaskAssignment:
    assignment = TaskAssignment(task_id=task.id, team_member_id=member.id)
    db.add(assignment)
    db.commit()
    return assignment


def unassign(db, task: Task, member: TeamMember) -> None:
    db.query(TaskAssignment).filter(
        TaskAssignment.task_id == task.id, TaskAssignment.team_member_id == member.id
    ).delete()
    db.commit()


def connect(
    db,
    user: User,
    access_token: str = "valid-access",
    refresh_token: str = "valid-refresh",
    expires_in: int = 3600,
    calendar_id: str = "primary",
):
    return CredentialStore(db).save_credential(
        user.id,
        {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": utcnow() + timedelta(seconds=expires_in),
            "scope": "https://www.googleapis.com/auth/calendar.events",
            "calendar_id": calendar_id,
        },
    )


def connected_member(db, email: str, **connect_kwargs) -> TeamMember:
    """A roster member linked to an account that has authorized Google Calendar"""
    user = make_user(db, email)
    connect(db, user, **connect_kwargs)
    return make_member(db, email, user=user)
