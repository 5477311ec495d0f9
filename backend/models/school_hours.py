from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Text, Time, Uuid
from sqlalchemy.sql import func

from models.base import Base


class SchoolHours(Base):
    __tablename__ = "school_hours"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    # 'default', a grade, or a kindergarten half-day variant ('K-AM', 'TK-PM', ...).
    grade_level = Column(Text, nullable=False, default="default")
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    school_site = Column(Text, nullable=True)
    school_district = Column(Text, nullable=True)
    school_id = Column(Text, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_school_hours_day"),
        CheckConstraint("start_time < end_time", name="ck_school_hours_time_order"),
    )
