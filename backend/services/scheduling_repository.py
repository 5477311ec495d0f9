from __future__ import annotations

import uuid
from typing import Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from models.bell_schedule import BellSchedule
from models.provider_work_schedule import ProviderWorkSchedule
from models.schedule_session import ScheduleSession
from models.school import School
from models.school_hours import SchoolHours
from models.special_activity import SpecialActivity
from models.student import Student
from scheduling.entities import (
    BellPeriod,
    SchoolHoursInfo,
    SessionRecord,
    SpecialActivityInfo,
    StudentInfo,
    WorkDay,
    split_grades,
)
from scheduling.school import SchoolIdentifier

# Roles that can be assigned sessions for another provider's students.
SPECIALIST_ROLES = frozenset({"resource", "speech", "ot", "counseling", "specialist"})


def session_record_from_row(row: ScheduleSession, *, grade_level: str | None = None) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        student_id=row.student_id,
        provider_id=row.provider_id,
        day_of_week=row.day_of_week,
        start_time=row.start_time,
        end_time=row.end_time,
        service_type=row.service_type,
        session_date=row.session_date,
        delivered_by=row.delivered_by,
        template_id=row.template_id,
        is_template=bool(row.is_template),
        grade_level=grade_level,
        assigned_to_specialist_id=row.assigned_to_specialist_id,
        assigned_to_sea_id=row.assigned_to_sea_id,
        group_id=row.group_id,
        group_name=row.group_name,
        manually_placed=bool(row.manually_placed),
        status=row.status,
        is_completed=bool(row.is_completed),
    )


def student_info_from_row(row: Student) -> StudentInfo:
    return StudentInfo(
        id=row.id,
        initials=row.initials,
        grade_level=row.grade_level,
        sessions_per_week=row.sessions_per_week,
        minutes_per_session=row.minutes_per_session,
        teacher_name=row.teacher_name,
        school=SchoolIdentifier.from_row(row),
    )


class SqlSchedulingRepository:
    """Loads scheduling constraint sources through a SQLAlchemy session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def fetch_provider_work_schedule(self, provider_id: uuid.UUID) -> list[WorkDay]:
        q = (
            select(ProviderWorkSchedule)
            .where(ProviderWorkSchedule.provider_id == provider_id)
            .order_by(ProviderWorkSchedule.day_of_week.asc())
        )
        return [
            WorkDay(day_of_week=row.day_of_week, school=SchoolIdentifier.from_row(row))
            for row in self.db.execute(q).scalars().all()
        ]

    def fetch_bell_schedules(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> list[BellPeriod]:
        q = select(BellSchedule).where(BellSchedule.provider_id == provider_id)
        q = school.apply_filter(q, BellSchedule).order_by(BellSchedule.day_of_week, BellSchedule.start_time)
        return [
            BellPeriod(
                grade_levels=split_grades(row.grade_level),
                day_of_week=row.day_of_week,
                start_time=row.start_time,
                end_time=row.end_time,
                period_name=row.period_name,
            )
            for row in self.db.execute(q).scalars().all()
        ]

    def fetch_special_activities(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> list[SpecialActivityInfo]:
        # Activities are shared at the school level: any provider's entry blocks the teacher.
        q = select(SpecialActivity).where(SpecialActivity.deleted_at.is_(None))
        if school.is_empty():
            q = q.where(SpecialActivity.provider_id == provider_id)
        else:
            q = school.apply_filter(q, SpecialActivity)
        q = q.order_by(SpecialActivity.day_of_week, SpecialActivity.start_time)
        return [
            SpecialActivityInfo(
                teacher_name=row.teacher_name,
                day_of_week=row.day_of_week,
                start_time=row.start_time,
                end_time=row.end_time,
                activity_name=row.activity_name,
                deleted_at=row.deleted_at,
            )
            for row in self.db.execute(q).scalars().all()
        ]

    def fetch_school_hours(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> list[SchoolHoursInfo]:
        q = select(SchoolHours).where(SchoolHours.provider_id == provider_id)
        q = school.apply_filter(q, SchoolHours).order_by(SchoolHours.day_of_week, SchoolHours.grade_level)
        return [
            SchoolHoursInfo(
                grade_level=row.grade_level,
                day_of_week=row.day_of_week,
                start_time=row.start_time,
                end_time=row.end_time,
            )
            for row in self.db.execute(q).scalars().all()
        ]

    def fetch_sessions(
        self, provider_id: uuid.UUID, school: SchoolIdentifier, provider_role: str | None = None
    ) -> list[SessionRecord]:
        """Scheduled templates for the provider's students at this school.

        Specialists also see sessions assigned to them for any provider's
        students at the same school.
        """

        student_q = school.apply_filter(select(Student.id).where(Student.provider_id == provider_id), Student)
        scope = and_(ScheduleSession.provider_id == provider_id, ScheduleSession.student_id.in_(student_q))
        if (provider_role or "").strip().lower() in SPECIALIST_ROLES:
            school_students_q = school.apply_filter(select(Student.id), Student)
            scope = or_(
                scope,
                and_(
                    ScheduleSession.assigned_to_specialist_id == provider_id,
                    ScheduleSession.student_id.in_(school_students_q),
                ),
            )
        q = (
            select(ScheduleSession, Student.grade_level)
            .join(Student, Student.id == ScheduleSession.student_id)
            .where(ScheduleSession.session_date.is_(None))
            .where(scope)
            .order_by(ScheduleSession.day_of_week, ScheduleSession.start_time, ScheduleSession.id)
        )
        return [session_record_from_row(row, grade_level=grade) for row, grade in self.db.execute(q).all()]

    def fetch_students(
        self,
        provider_id: uuid.UUID,
        school: SchoolIdentifier,
        student_ids: Iterable[uuid.UUID] | None = None,
    ) -> list[StudentInfo]:
        q = school.apply_filter(select(Student).where(Student.provider_id == provider_id), Student)
        if student_ids is not None:
            q = q.where(Student.id.in_(list(student_ids)))
        q = q.order_by(Student.initials.asc(), Student.id.asc())
        return [student_info_from_row(row) for row in self.db.execute(q).scalars().all()]

    def count_scheduled_templates(self, provider_id: uuid.UUID, student_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, int]:
        """Placed templates already on file per student (placeholders excluded)."""

        ids = list(student_ids)
        if not ids:
            return {}
        q = (
            select(ScheduleSession.student_id)
            .where(ScheduleSession.provider_id == provider_id)
            .where(ScheduleSession.session_date.is_(None))
            .where(ScheduleSession.student_id.in_(ids))
            .where(ScheduleSession.day_of_week.is_not(None))
        )
        counts: dict[uuid.UUID, int] = {}
        for (student_id,) in self.db.execute(q).all():
            counts[student_id] = counts.get(student_id, 0) + 1
        return counts

    def resolve_school(self, school: SchoolIdentifier) -> SchoolIdentifier:
        if school.school_id or not school.school_site:
            return school
        return school.resolve(self.db.execute(select(School)).scalars().all())
