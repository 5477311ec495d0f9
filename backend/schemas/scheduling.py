from __future__ import annotations

import uuid
from datetime import time
from typing import Any

from pydantic import BaseModel, Field, model_validator

from scheduling.school import SchoolIdentifier


class SchoolRef(BaseModel):
    school_site: str | None = None
    school_district: str | None = None
    school_id: str | None = None

    def to_identifier(self) -> SchoolIdentifier:
        return SchoolIdentifier(
            school_site=(self.school_site or "").strip() or None,
            school_district=(self.school_district or "").strip() or None,
            school_id=(self.school_id or "").strip() or None,
        )


class TimeRange(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _check_order(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class ValidatePlacementRequest(TimeRange):
    provider_id: uuid.UUID
    student_id: uuid.UUID
    school: SchoolRef
    exclude_session_ids: list[uuid.UUID] = Field(default_factory=list)
    overrides: list[str] = Field(default_factory=list)


class ConstraintViolationOut(BaseModel):
    type: str
    message: str
    severity: str
    details: dict[str, Any] = Field(default_factory=dict)


class ValidationResultOut(BaseModel):
    is_valid: bool
    errors: list[ConstraintViolationOut] = Field(default_factory=list)
    warnings: list[ConstraintViolationOut] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DistributeRequest(BaseModel):
    provider_id: uuid.UUID
    provider_role: str | None = None
    school: SchoolRef
    # Omit to schedule every student on the provider's caseload at this school.
    student_ids: list[uuid.UUID] | None = None
    strategy: str | None = Field(default=None, pattern="^(two-pass|grade-grouped|even|spread|compact)$")
    prefer_morning: bool = False
    prefer_afternoon: bool = False
    persist: bool = False
    weeks_ahead: int | None = Field(default=None, ge=1, le=52)
    expected_fingerprint: str | None = None


class PlacementOut(BaseModel):
    id: uuid.UUID
    day_of_week: int
    start_time: time
    end_time: time
    service_type: str
    delivered_by: str


class UnscheduledOut(BaseModel):
    count: int
    reason: str
    most_common_errors: list[tuple[str, int]] = Field(default_factory=list)


class DistributionMetricsOut(BaseModel):
    """Provider-wide week load after the run; identical for every student in a batch."""

    average_sessions_per_day: float
    max_sessions_per_day: int
    grade_grouping_score: float
    distribution_balance: float


class StudentDistributionOut(BaseModel):
    student_id: uuid.UUID
    strategy: str
    success: bool
    placements: list[PlacementOut] = Field(default_factory=list)
    unscheduled: list[UnscheduledOut] = Field(default_factory=list)
    pass_counts: dict[int, int] = Field(default_factory=dict)


class DistributeResponse(BaseModel):
    ok: bool = True
    persisted: bool = False
    students: list[StudentDistributionOut] = Field(default_factory=list)
    metrics: DistributionMetricsOut | None = None
    templates_created: int = 0
    placeholders_created: int = 0
    instances_created: int = 0
    instance_errors: list[str] = Field(default_factory=list)
    version: int = 0
    fingerprint: str = ""


class MoveSessionRequest(TimeRange):
    school: SchoolRef
    overrides: list[str] = Field(default_factory=list)
    weeks_ahead: int | None = Field(default=None, ge=1, le=52)


class MoveSessionResponse(BaseModel):
    ok: bool
    validation: ValidationResultOut
    session: PlacementOut | None = None


class UnscheduleResponse(BaseModel):
    ok: bool = True
    session_id: uuid.UUID
    instances_deleted: int = 0


class VersionResponse(BaseModel):
    version: int
    fingerprint: str
    school_key: str
    loaded_at: str
    metrics: dict[str, Any] = Field(default_factory=dict)


class SessionChangeOut(BaseModel):
    kind: str
    session_id: uuid.UUID
    detail: str


class ConflictReportOut(BaseModel):
    has_conflicts: bool
    stale: bool = False
    version: int
    persisted_fingerprint: str
    concurrent_changes: list[SessionChangeOut] = Field(default_factory=list)
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
