"""Calendar sync error taxonomy"""

from typing import Optional


class CalendarSyncError(Exception):
    """Base error for the calendar sync domain"""


class ValidationError(CalendarSyncError, ValueError):
    """Raised when a task's due date/time cannot be turned into an instant."""


class NoCredentialsError(CalendarSyncError):
    """Raised when an assignee never authorized Google Calendar access."""


class AuthExpiredError(CalendarSyncError):
    """Raised when the stored refresh token can no longer be exchanged."""


class ProviderError(CalendarSyncError):
    """Raised when the Google Calendar API fails (network, 5xx, 429, timeouts)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is not None:
            message = f"Google Calendar API request failed ({status_code}): {message}"
        super().__init__(message)


class ProviderNotFound(ProviderError):
    """Raised when the event no longer exists on the provider (404/410)."""


class TaskNotFoundError(CalendarSyncError, LookupError):
    """Raised when a sync is requested for a task that does not exist."""
