from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Text, Time, Uuid
from sqlalchemy.sql import func

from models.base import Base


class SpecialActivity(Base):
    __tablename__ = "special_activities"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    teacher_name = Column(Text, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    activity_name = Column(Text, nullable=True)

    school_site = Column(Text, nullable=True)
    school_district = Column(Text, nullable=True)
    school_id = Column(Text, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    # Soft delete; rows with deleted_at set never conflict.
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_special_activities_day"),
        CheckConstraint("start_time < end_time", name="ck_special_activities_time_order"),
    )
