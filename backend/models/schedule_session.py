from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from models.base import Base


class ScheduleSession(Base):
    """A weekly template (session_date is null) or one dated instance of a template.

    A template whose day/start/end are all null is an unscheduled placeholder
    waiting to be placed by hand.
    """

    __tablename__ = "schedule_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    provider_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    service_type = Column(Text, nullable=False, default="resource")

    day_of_week = Column(Integer, nullable=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    session_date = Column(Date, nullable=True)

    delivered_by = Column(Text, nullable=False, default="provider")
    assigned_to_specialist_id = Column(Uuid(as_uuid=True), nullable=True)
    assigned_to_sea_id = Column(Uuid(as_uuid=True), nullable=True)
    group_id = Column(Uuid(as_uuid=True), nullable=True)
    group_name = Column(Text, nullable=True)

    manually_placed = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default="active")
    student_absent = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)

    template_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    is_template = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="ck_schedule_sessions_day",
        ),
        CheckConstraint(
            "start_time IS NULL OR end_time IS NULL OR start_time < end_time",
            name="ck_schedule_sessions_time_order",
        ),
        CheckConstraint(
            "delivered_by IN ('provider', 'sea', 'specialist')",
            name="ck_schedule_sessions_delivered_by",
        ),
        UniqueConstraint("template_id", "session_date", name="uq_schedule_sessions_template_date"),
        Index("ix_schedule_sessions_provider_day", "provider_id", "day_of_week"),
    )

    @property
    def is_scheduled(self) -> bool:
        return self.day_of_week is not None and self.start_time is not None and self.end_time is not None
