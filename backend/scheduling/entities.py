from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Mapping

from scheduling.school import SchoolIdentifier
from scheduling.timeutils import to_minutes


@dataclass(frozen=True)
class StudentInfo:
    id: uuid.UUID
    initials: str
    grade_level: str
    sessions_per_week: int
    minutes_per_session: int
    teacher_name: str | None = None
    school: SchoolIdentifier | None = None

    @property
    def total_minutes(self) -> int:
        return self.sessions_per_week * self.minutes_per_session

    @property
    def grade(self) -> str:
        return (self.grade_level or "").strip().upper()


@dataclass(frozen=True)
class SessionRecord:
    """Read-only view of one schedule_sessions row (template or instance)."""

    id: uuid.UUID
    student_id: uuid.UUID
    provider_id: uuid.UUID
    day_of_week: int | None
    start_time: time | None
    end_time: time | None
    service_type: str = "resource"
    session_date: date | None = None
    delivered_by: str = "provider"
    template_id: uuid.UUID | None = None
    is_template: bool = True
    grade_level: str | None = None
    assigned_to_specialist_id: uuid.UUID | None = None
    assigned_to_sea_id: uuid.UUID | None = None
    group_id: uuid.UUID | None = None
    group_name: str | None = None
    manually_placed: bool = False
    status: str = "active"
    is_completed: bool = False

    @property
    def is_scheduled(self) -> bool:
        return self.day_of_week is not None and self.start_time is not None and self.end_time is not None

    @property
    def start_minutes(self) -> int:
        return to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return to_minutes(self.end_time)

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes

    def slot_key(self) -> tuple[int, int, int]:
        return (self.day_of_week, self.start_minutes, self.end_minutes)


@dataclass(frozen=True)
class BellPeriod:
    grade_levels: tuple[str, ...]
    day_of_week: int
    start_time: time
    end_time: time
    period_name: str | None = None


@dataclass(frozen=True)
class SpecialActivityInfo:
    teacher_name: str
    day_of_week: int
    start_time: time
    end_time: time
    activity_name: str | None = None
    deleted_at: datetime | None = None


@dataclass(frozen=True)
class SchoolHoursInfo:
    grade_level: str
    day_of_week: int
    start_time: time
    end_time: time


@dataclass(frozen=True)
class WorkDay:
    day_of_week: int
    school: SchoolIdentifier


@dataclass(frozen=True)
class SchedulingSnapshot:
    sessions: tuple[SessionRecord, ...]
    version: int
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


def split_grades(raw: str | None) -> tuple[str, ...]:
    """Bell schedules may list several grades in one row ("K,1,2")."""

    if not raw:
        return ()
    return tuple(g.strip().upper() for g in raw.split(",") if g.strip())
