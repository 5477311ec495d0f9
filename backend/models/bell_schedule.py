from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Text, Time, Uuid
from sqlalchemy.sql import func

from models.base import Base


class BellSchedule(Base):
    __tablename__ = "bell_schedules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    # May hold a comma-separated list, e.g. "K,1,2".
    grade_level = Column(Text, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    period_name = Column(Text, nullable=True)

    school_site = Column(Text, nullable=True)
    school_district = Column(Text, nullable=True)
    school_id = Column(Text, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_bell_schedules_day"),
        CheckConstraint("start_time < end_time", name="ck_bell_schedules_time_order"),
    )
