from __future__ import annotations

import uuid
from datetime import datetime, time

from pydantic import BaseModel, Field, model_validator


class _TimeBlock(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _check_order(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class BellScheduleCreate(_TimeBlock):
    provider_id: uuid.UUID
    grade_level: str = Field(min_length=1)
    period_name: str | None = None
    school_site: str | None = None
    school_district: str | None = None
    school_id: str | None = None


class BellScheduleOut(BellScheduleCreate):
    id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


class SpecialActivityCreate(_TimeBlock):
    provider_id: uuid.UUID
    teacher_name: str = Field(min_length=1)
    activity_name: str | None = None
    school_site: str | None = None
    school_district: str | None = None
    school_id: str | None = None


class SpecialActivityOut(SpecialActivityCreate):
    id: uuid.UUID
    created_at: datetime
    deleted_at: datetime | None = None

    class Config:
        from_attributes = True
