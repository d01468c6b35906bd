"""
Portal models read by calendar sync.

Only the columns the sync core consumes are declared here; the rest of the
project/task schema is owned by the CRUD layer.
"""

import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_id():
    """Generate a string primary key (UUID4)"""
    return str(uuid.uuid4())


class User(Base):
    """Canonical account - the identity Google credentials are stored against"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(50), default="team_member")  # admin, team_member, client
    created_at = Column(DateTime, server_default=func.now())


class TeamMember(Base):
    """Team roster entry; tasks are assigned to these, not to users directly"""

    __tablename__ = "team_members"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(String(50), nullable=True)  # project_manager, designer, content_writer, ...
    # Backfilled once the member signs in; email is the fallback link to users
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(50), default="in_progress", nullable=False)  # in_progress, completed, needs_approval, outstanding
    priority = Column(String(20), default="medium")  # low, medium, high, urgent

    # Display fields as entered by the user
    due_date = Column(Date, nullable=True)
    due_time = Column(String(20), nullable=True)  # "14:30", "2:30 PM", "2 PM"
    timezone = Column(String(64), nullable=True)  # IANA name; falls back to APP_TIMEZONE
    # Canonical UTC instant computed from the display fields; null means not calendar-eligible
    due_at = Column(DateTime(timezone=True), nullable=True)

    google_drive_link = Column(Text, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    assignments = relationship(
        "TaskAssignment", back_populates="task", cascade="all, delete-orphan"
    )


class TaskAssignment(Base):
    """One row per team member on a task; each gets its own calendar event"""

    __tablename__ = "task_assignments"
    __table_args__ = (UniqueConstraint("task_id", "team_member_id", name="uq_task_assignment"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=False, index=True)
    team_member_id = Column(String(36), ForeignKey("team_members.id"), nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())

    task = relationship("Task", back_populates="assignments")
    team_member = relationship("TeamMember")
