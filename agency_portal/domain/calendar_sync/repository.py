"""Calendar sync repository - Database operations for event mappings and task reads"""

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import Task, TaskAssignment, TeamMember
from ...models_google_calendar import CalendarEventMapping
from .schemas import Assignee
from .time_normalizer import utcnow

PRIMARY_CALENDAR_ID = "primary"


class EventMappingRepository:
    """Repository for (task, assignee) -> Google event mappings. Last write wins."""

    @staticmethod
    def get(db: Session, task_id: str, assignee_id: str) -> Optional[CalendarEventMapping]:
        """Get the mapping for a task/assignee pair"""
        return (
            db.query(CalendarEventMapping)
            .filter(
                CalendarEventMapping.task_id == task_id,
                CalendarEventMapping.assignee_id == assignee_id,
            )
            .first()
        )

    @staticmethod
    def put(
        db: Session,
        task_id: str,
        assignee_id: str,
        external_event_id: str,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> CalendarEventMapping:
        """Insert or replace the mapping for a task/assignee pair"""
        mapping = EventMappingRepository.get(db, task_id, assignee_id)
        if mapping is None:
            mapping = CalendarEventMapping(
                task_id=task_id,
                assignee_id=assignee_id,
                external_event_id=external_event_id,
                calendar_id=calendar_id or PRIMARY_CALENDAR_ID,
                updated_at=utcnow(),
            )
            db.add(mapping)
            try:
                db.commit()
            except IntegrityError:
                # Another worker inserted the same pair first; overwrite it
                db.rollback()
                mapping = EventMappingRepository.get(db, task_id, assignee_id)
                if mapping is None:
                    raise
                return EventMappingRepository._overwrite(db, mapping, external_event_id, calendar_id)
            db.refresh(mapping)
            return mapping

        return EventMappingRepository._overwrite(db, mapping, external_event_id, calendar_id)

    @staticmethod
    def _overwrite(
        db: Session, mapping: CalendarEventMapping, external_event_id: str, calendar_id: str
    ) -> CalendarEventMapping:
        mapping.external_event_id = external_event_id
        mapping.calendar_id = calendar_id or PRIMARY_CALENDAR_ID
        mapping.updated_at = utcnow()
        db.commit()
        db.refresh(mapping)
        return mapping

    @staticmethod
    def remove(db: Session, task_id: str, assignee_id: str) -> bool:
        """Delete the mapping; returns False when there was none"""
        deleted = (
            db.query(CalendarEventMapping)
            .filter(
                CalendarEventMapping.task_id == task_id,
                CalendarEventMapping.assignee_id == assignee_id,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted > 0

    @staticmethod
    def list_for_task(db: Session, task_id: str) -> list[CalendarEventMapping]:
        """All mappings for a task, one per assignee that has an event"""
        return (
            db.query(CalendarEventMapping)
            .filter(CalendarEventMapping.task_id == task_id)
            .order_by(CalendarEventMapping.assignee_id)
            .all()
        )


class TaskReadRepository:
    """Reads from the task-management tables; sync never writes to them"""

    @staticmethod
    def get_task(db: Session, task_id: str) -> Optional[Task]:
        return db.query(Task).filter(Task.id == task_id).first()

    @staticmethod
    def get_assignees(db: Session, task_id: str) -> list[Assignee]:
        """Current assignee set for a task, ordered for stable results"""
        rows = (
            db.query(TeamMember.id, TeamMember.email)
            .join(TaskAssignment, TaskAssignment.team_member_id == TeamMember.id)
            .filter(TaskAssignment.task_id == task_id)
            .order_by(TeamMember.id)
            .all()
        )
        return [Assignee(id=member_id, email=email) for member_id, email in rows]

    @staticmethod
    def get_assignee(db: Session, assignee_id: str) -> Optional[Assignee]:
        member = db.query(TeamMember).filter(TeamMember.id == assignee_id).first()
        if not member:
            return None
        return Assignee(id=member.id, email=member.email)
