from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.sql import func

from models.base import Base


class Student(Base):
    __tablename__ = "students"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    # Initials only; full names are never stored.
    initials = Column(Text, nullable=False)
    grade_level = Column(Text, nullable=False)
    teacher_name = Column(Text, nullable=True)
    sessions_per_week = Column(Integer, nullable=False, default=0)
    minutes_per_session = Column(Integer, nullable=False, default=30)

    # Legacy text identity + structured identity (migrated users have both).
    school_site = Column(Text, nullable=True)
    school_district = Column(Text, nullable=True)
    school_id = Column(Text, nullable=True, index=True)
    district_id = Column(Text, nullable=True)
    state_id = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("sessions_per_week >= 0", name="ck_students_sessions_per_week"),
        CheckConstraint("minutes_per_session > 0", name="ck_students_minutes_per_session"),
    )
