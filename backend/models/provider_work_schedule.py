from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.sql import func

from models.base import Base


class ProviderWorkSchedule(Base):
    """Which school a provider works at on which weekday."""

    __tablename__ = "user_site_schedules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)

    school_site = Column(Text, nullable=True)
    school_district = Column(Text, nullable=True)
    school_id = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_user_site_schedules_day"),
    )
