from __future__ import annotations

import uuid
from datetime import date, time

from pydantic import BaseModel, Field


class GenerateInstancesRequest(BaseModel):
    weeks_ahead: int = Field(default=8, ge=1, le=52)
    until_date: date | None = None
    use_school_year_end: bool = False


class GenerateAllInstancesRequest(BaseModel):
    weeks_ahead: int = Field(default=8, ge=1, le=52)


class SessionInstanceOut(BaseModel):
    id: uuid.UUID
    template_id: uuid.UUID | None = None
    student_id: uuid.UUID
    session_date: date | None = None
    day_of_week: int | None = None
    start_time: time | None = None
    end_time: time | None = None


class GenerateInstancesResponse(BaseModel):
    success: bool
    instances_created: int = 0
    instances: list[SessionInstanceOut] = Field(default_factory=list)
    error: str | None = None


class GenerateAllInstancesResponse(BaseModel):
    total: int
    created: int
    errors: list[str] = Field(default_factory=list)
    end_date: date | None = None
