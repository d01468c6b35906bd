"""
Google Calendar Client
Create, update, delete and fetch events on one account's calendar
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ...config import CALENDAR_PROVIDER_TIMEOUT_SECONDS
from .credentials import CredentialHandle
from .exceptions import AuthExpiredError, ProviderError, ProviderNotFound
from .schemas import EventSnapshot
from .time_normalizer import get_zone

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Gone events come back as 404, or 410 once Google has purged them
NOT_FOUND_STATUS_CODES = {404, 410}


def _error_message(response: httpx.Response) -> str:
    """Pull Google's error message without echoing request data"""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or "unknown error"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.reason_phrase or "unknown error"


def _parse_event_time(value: Optional[dict]) -> tuple[Optional[datetime], Optional[str]]:
    if not value:
        return None, None
    raw = value.get("dateTime")
    tz_name = value.get("timeZone")
    if not raw:
        return None, tz_name
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        # Wall-clock time qualified only by the timeZone field
        parsed = parsed.replace(tzinfo=get_zone(tz_name) if tz_name else timezone.utc)
    return parsed, tz_name


class GoogleCalendarClient:
    """Thin wrapper over the Google Calendar v3 events API for one credential"""

    def __init__(
        self,
        handle: CredentialHandle,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = CALENDAR_PROVIDER_TIMEOUT_SECONDS,
    ):
        self.handle = handle
        self.http_client = http_client
        self.timeout = timeout

    def _events_path(self, event_id: Optional[str] = None) -> str:
        calendar_id = quote(self.handle.calendar_id or "primary", safe="")
        path = f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    async def _send(self, method: str, url: str, json_body: Optional[dict] = None) -> httpx.Response:
        headers = self.handle.authorization_header
        try:
            if self.http_client is not None:
                return await self.http_client.request(
                    method, url, headers=headers, json=json_body, timeout=self.timeout
                )
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers, json=json_body)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Google Calendar {method} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Google Calendar {method} failed: {e}") from e

    async def _request(self, method: str, url: str, json_body: Optional[dict] = None) -> dict[str, Any]:
        response = await self._send(method, url, json_body)

        if response.status_code in NOT_FOUND_STATUS_CODES:
            raise ProviderNotFound(_error_message(response), status_code=response.status_code)
        if response.status_code == 401:
            raise AuthExpiredError(
                f"Google rejected the access token for account {self.handle.account_id} "
                f"({self.handle.token_hint})"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(_error_message(response), status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("Google Calendar returned invalid JSON", response.status_code) from e
        if not isinstance(body, dict):
            raise ProviderError("Google Calendar returned an unexpected payload", response.status_code)
        return body

    async def create(self, payload: dict[str, Any]) -> str:
        """Insert an event and return the provider-assigned id"""
        event = await self._request("POST", self._events_path(), payload)
        event_id = event.get("id")
        if not event_id:
            raise ProviderError("Google Calendar created an event without an id")
        logger.info(f"✅ Google Calendar event created: {event_id}")
        return event_id

    async def update(self, event_id: str, payload: dict[str, Any]) -> None:
        """Replace an event; raises ProviderNotFound if it is gone"""
        await self._request("PUT", self._events_path(event_id), payload)
        logger.info(f"✅ Google Calendar event updated: {event_id}")

    async def delete(self, event_id: str) -> None:
        """Delete an event; an already-missing event counts as deleted"""
        try:
            await self._request("DELETE", self._events_path(event_id))
        except ProviderNotFound:
            logger.info(f"ℹ️ Google Calendar event {event_id} already gone")
            return
        logger.info(f"✅ Google Calendar event deleted: {event_id}")

    async def get(self, event_id: str) -> EventSnapshot:
        event = await self._request("GET", self._events_path(event_id))
        if event.get("status") == "cancelled":
            # Deleted events can linger as cancelled tombstones
            raise ProviderNotFound(f"Event {event_id} is cancelled", status_code=410)
        start, tz = _parse_event_time(event.get("start"))
        end, _ = _parse_event_time(event.get("end"))
        return EventSnapshot(
            event_id=event.get("id", event_id),
            summary=event.get("summary"),
            description=event.get("description"),
            start=start,
            end=end,
            timezone=tz,
            html_link=event.get("htmlLink"),
            status=event.get("status"),
        )
