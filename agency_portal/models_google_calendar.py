"""
Google Calendar Integration Models
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class GoogleCalendarCredential(Base):
    """OAuth credential record, exactly one per canonical account"""

    __tablename__ = "google_calendar_credentials"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=False)  # naive UTC
    scope = Column(Text, nullable=True)

    # Google user info
    google_user_email = Column(String(255), nullable=True)
    google_calendar_id = Column(String(500), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    account = relationship("User")


class CalendarEventMapping(Base):
    """Link between a (task, assignee) pair and the Google event representing it"""

    __tablename__ = "calendar_event_mappings"
    __table_args__ = (
        UniqueConstraint("task_id", "assignee_id", name="uq_calendar_mapping_task_assignee"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # No FK to tasks: rows must outlive a hard-deleted task until its events are cleaned up
    task_id = Column(String(36), nullable=False, index=True)
    assignee_id = Column(String(36), nullable=False, index=True)
    external_event_id = Column(String(1024), nullable=False, index=True)
    calendar_id = Column(String(500), nullable=False, default="primary")

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, nullable=False)  # last successful sync, naive UTC
