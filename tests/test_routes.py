import httpx
import pytest
from fastapi.testclient import TestClient

from agency_portal.database import get_db
from agency_portal.domain.calendar_sync.credentials import CredentialStore, decrypt_token
from agency_portal.domain.calendar_sync.gate import get_sync_gate
from agency_portal.domain.calendar_sync.oauth_router import build_oauth_state, get_http_client
from agency_portal.domain.calendar_sync.repository import EventMappingRepository
from agency_portal.domain.calendar_sync.router import get_admin_token, get_calendar_sync_service
from agency_portal.main import app

from .conftest import assign, connect, connected_member, make_task, make_user

ADMIN_TOKEN = "admin-secret"
ADMIN = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def client(db, gate, service, http_client):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_sync_gate] = lambda: gate
    app.dependency_overrides[get_admin_token] = lambda: ADMIN_TOKEN
    app.dependency_overrides[get_calendar_sync_service] = lambda: service
    app.dependency_overrides[get_http_client] = lambda: http_client
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def synced_task(db):
    member = connected_member(db, "dana@example.com")
    task = make_task(db)
    assign(db, task, member)
    return task, member


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestAdminAuth:
    def test_missing_token(self, client):
        assert client.get("/calendar-sync/status").status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/calendar-sync/status", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_routes_closed_when_no_token_configured(self, client):
        app.dependency_overrides[get_admin_token] = lambda: None
        assert client.get("/calendar-sync/status", headers=ADMIN).status_code == 403


class TestKillSwitch:
    def test_toggle(self, client, gate):
        assert client.get("/calendar-sync/status", headers=ADMIN).json() == {"enabled": True}

        assert client.post("/calendar-sync/disable", headers=ADMIN).json() == {"enabled": False}
        assert gate.is_enabled() is False
        assert client.get("/calendar-sync/status", headers=ADMIN).json() == {"enabled": False}

        assert client.post("/calendar-sync/enable", headers=ADMIN).json() == {"enabled": True}
        assert gate.is_enabled() is True


class TestTaskRoutes:
    def test_resync(self, client, synced_task, fake_google):
        task, member = synced_task
        response = client.post(f"/calendar-sync/tasks/{task.id}/sync", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body[0]["status"] == "ok"
        assert body[0]["action"] == "created"
        assert body[0]["assignee_id"] == member.id
        assert len(fake_google.all_events()) == 1

    def test_resync_unknown_task(self, client):
        assert client.post("/calendar-sync/tasks/missing/sync", headers=ADMIN).status_code == 404

    def test_resync_while_disabled(self, client, gate, synced_task, fake_google):
        task, _ = synced_task
        gate.set_enabled(False)
        body = client.post(f"/calendar-sync/tasks/{task.id}/sync", headers=ADMIN).json()
        assert body[0]["status"] == "skipped"
        assert body[0]["reason"] == "disabled"
        assert fake_google.calls == []

    def test_mappings_and_unsync(self, client, db, synced_task, fake_google):
        task, member = synced_task
        client.post(f"/calendar-sync/tasks/{task.id}/sync", headers=ADMIN)

        mappings = client.get(f"/calendar-sync/tasks/{task.id}/mappings", headers=ADMIN).json()
        assert [m["assignee_id"] for m in mappings] == [member.id]
        assert mappings[0]["calendar_id"] == "primary"

        response = client.delete(f"/calendar-sync/tasks/{task.id}/assignees/{member.id}", headers=ADMIN)
        assert response.json() == {"task_id": task.id, "assignee_id": member.id, "success": True}
        assert EventMappingRepository.get(db, task.id, member.id) is None
        assert fake_google.all_events() == {}

    def test_payload_preview(self, client, synced_task, fake_google):
        task, _ = synced_task
        body = client.get(f"/calendar-sync/tasks/{task.id}/payload", headers=ADMIN).json()

        assert body["start_local"] == "2025-03-10T14:30:00-07:00"
        assert body["end_local"] == "2025-03-10T15:30:00-07:00"
        assert body["timezone"] == "America/Vancouver"
        assert fake_google.calls == []

    def test_payload_for_date_only_task(self, client, db):
        task = make_task(db, due_time=None)
        assert client.get(f"/calendar-sync/tasks/{task.id}/payload", headers=ADMIN).status_code == 400

    def test_self_test(self, client, db, fake_google):
        connected_member(db, "dana@example.com")
        response = client.post(
            "/calendar-sync/self-test",
            headers=ADMIN,
            json={"email": "dana@example.com", "timezone": "America/Vancouver"},
        )
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert fake_google.all_events() == {}

    def test_self_test_rejects_bad_email(self, client):
        response = client.post("/calendar-sync/self-test", headers=ADMIN, json={"email": "not-an-email"})
        assert response.status_code == 422


class TestGoogleOAuth:
    def test_connect_requires_account(self, client):
        assert client.get("/google-calendar/connect").status_code == 401
        assert client.get("/google-calendar/connect", headers={"X-Account-Id": "ghost"}).status_code == 401

    def test_connect_returns_authorization_url(self, client, db):
        user = make_user(db, "dana@example.com")
        response = client.get("/google-calendar/connect", headers={"X-Account-Id": user.id})

        url = response.json()["authorization_url"]
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "access_type=offline" in url
        assert "state=" in url

    def test_callback_stores_credential(self, client, db):
        user = make_user(db, "dana@example.com")
        response = client.post(
            "/google-calendar/callback",
            json={"code": "auth-code", "state": build_oauth_state(user.id)},
        )

        assert response.status_code == 200
        assert response.json()["user_email"] == "calendar-owner@example.com"
        credential = CredentialStore(db).get_credential(user.id)
        assert decrypt_token(credential.access_token) == "oauth-access"
        assert decrypt_token(credential.refresh_token) == "oauth-refresh"
        assert credential.google_calendar_id == "calendar-owner@example.com"

    def test_callback_rejects_forged_state(self, client, db):
        make_user(db, "dana@example.com")
        response = client.post("/google-calendar/callback", json={"code": "auth-code", "state": "forged"})
        assert response.status_code == 400

    def test_status_and_disconnect(self, client, db):
        user = make_user(db, "dana@example.com")
        headers = {"X-Account-Id": user.id}
        assert client.get("/google-calendar/status", headers=headers).json()["connected"] is False

        connect(db, user)
        status = client.get("/google-calendar/status", headers=headers).json()
        assert status["connected"] is True
        assert status["calendar_id"] == "primary"

        assert client.post("/google-calendar/disconnect", headers=headers).status_code == 200
        assert CredentialStore(db).get_credential(user.id) is None
        assert client.post("/google-calendar/disconnect", headers=headers).status_code == 404

    @staticmethod
    def google_answering(userinfo, token=None):
        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                return token or httpx.Response(
                    200, json={"access_token": "oauth-access", "refresh_token": "oauth-refresh"}
                )
            if request.url.path == "/oauth2/v2/userinfo":
                return userinfo
            return httpx.Response(200, text="<html>maintenance</html>")

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_callback_with_non_json_token_response(self, client, db):
        user = make_user(db, "dana@example.com")
        app.dependency_overrides[get_http_client] = lambda: self.google_answering(
            userinfo=httpx.Response(200, json={"email": "dana@example.com"}),
            token=httpx.Response(200, text="<html>oops</html>"),
        )

        response = client.post(
            "/google-calendar/callback", json={"code": "auth-code", "state": build_oauth_state(user.id)}
        )
        assert response.status_code == 400
        assert CredentialStore(db).get_credential(user.id) is None

    def test_callback_with_non_json_user_info(self, client, db):
        user = make_user(db, "dana@example.com")
        app.dependency_overrides[get_http_client] = lambda: self.google_answering(
            userinfo=httpx.Response(200, text="<html>maintenance</html>")
        )

        response = client.post(
            "/google-calendar/callback", json={"code": "auth-code", "state": build_oauth_state(user.id)}
        )
        assert response.status_code == 502
        assert CredentialStore(db).get_credential(user.id) is None

    def test_callback_falls_back_to_primary_calendar(self, client, db):
        user = make_user(db, "dana@example.com")
        app.dependency_overrides[get_http_client] = lambda: self.google_answering(
            userinfo=httpx.Response(200, json={"email": "dana@example.com"})
        )

        response = client.post(
            "/google-calendar/callback", json={"code": "auth-code", "state": build_oauth_state(user.id)}
        )
        assert response.status_code == 200
        assert CredentialStore(db).get_credential(user.id).google_calendar_id == "primary"
