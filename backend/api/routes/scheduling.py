from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_scheduling_service, parse_overrides
from schemas.scheduling import (
    ConflictReportOut,
    ConstraintViolationOut,
    DistributeRequest,
    DistributeResponse,
    DistributionMetricsOut,
    MoveSessionRequest,
    MoveSessionResponse,
    PlacementOut,
    SchoolRef,
    SessionChangeOut,
    StudentDistributionOut,
    UnscheduledOut,
    UnscheduleResponse,
    ValidatePlacementRequest,
    ValidationResultOut,
    VersionResponse,
)
from scheduling.entities import SessionRecord
from scheduling.validator import ValidationResult
from services.scheduling_service import InvalidSessionOperationError, RecordNotFoundError, SchedulingService


logger = logging.getLogger(__name__)


router = APIRouter()


def _validation_out(result: ValidationResult) -> ValidationResultOut:
    return ValidationResultOut(
        is_valid=result.is_valid,
        errors=[ConstraintViolationOut(**e.to_dict()) for e in result.errors],
        warnings=[ConstraintViolationOut(**w.to_dict()) for w in result.warnings],
        metadata=result.metadata,
    )


def _placement_out(s: SessionRecord) -> PlacementOut:
    return PlacementOut(
        id=s.id,
        day_of_week=s.day_of_week,
        start_time=s.start_time,
        end_time=s.end_time,
        service_type=s.service_type,
        delivered_by=s.delivered_by,
    )


def _school_from_query(
    school_site: str | None = Query(default=None),
    school_district: str | None = Query(default=None),
    school_id: str | None = Query(default=None),
) -> SchoolRef:
    return SchoolRef(school_site=school_site, school_district=school_district, school_id=school_id)


@router.post("/validate", response_model=ValidationResultOut)
def validate_placement(
    payload: ValidatePlacementRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> ValidationResultOut:
    try:
        result = service.validate_placement(
            provider_id=payload.provider_id,
            school=payload.school.to_identifier(),
            student_id=payload.student_id,
            day_of_week=payload.day_of_week,
            start_time=payload.start_time,
            end_time=payload.end_time,
            exclude_session_ids=payload.exclude_session_ids,
            overrides=parse_overrides(payload.overrides),
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _validation_out(result)


@router.post("/distribute", response_model=DistributeResponse)
def distribute_sessions(
    payload: DistributeRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> DistributeResponse:
    if payload.prefer_morning and payload.prefer_afternoon:
        raise HTTPException(status_code=400, detail="CONFLICTING_TIME_PREFERENCE")

    run = service.schedule_students(
        provider_id=payload.provider_id,
        school=payload.school.to_identifier(),
        provider_role=payload.provider_role,
        student_ids=payload.student_ids,
        strategy=payload.strategy,
        prefer_morning=payload.prefer_morning,
        prefer_afternoon=payload.prefer_afternoon,
        persist=payload.persist,
        weeks_ahead=payload.weeks_ahead,
        expected_fingerprint=payload.expected_fingerprint,
    )

    students = [
        StudentDistributionOut(
            student_id=r.student_id,
            strategy=r.strategy.value,
            success=r.success,
            placements=[_placement_out(p) for p in r.placements],
            unscheduled=[
                UnscheduledOut(count=u.count, reason=u.reason, most_common_errors=list(u.most_common_errors))
                for u in r.unscheduled
            ],
            pass_counts=r.pass_counts,
        )
        for r in run.results
    ]
    metrics = None
    if run.results:
        m = run.results[-1].metrics
        metrics = DistributionMetricsOut(
            average_sessions_per_day=m.average_sessions_per_day,
            max_sessions_per_day=m.max_sessions_per_day,
            grade_grouping_score=m.grade_grouping_score,
            distribution_balance=m.distribution_balance,
        )

    return DistributeResponse(
        ok=all(s.success for s in students),
        persisted=run.persisted,
        students=students,
        metrics=metrics,
        templates_created=run.templates_created,
        placeholders_created=run.placeholders_created,
        instances_created=run.instances_created,
        instance_errors=run.instance_errors,
        version=run.version,
        fingerprint=run.fingerprint,
    )


@router.post("/sessions/{session_id}/move", response_model=MoveSessionResponse)
def move_session(
    session_id: uuid.UUID,
    payload: MoveSessionRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> MoveSessionResponse:
    try:
        result, moved = service.move_session(
            session_id,
            school=payload.school.to_identifier(),
            day_of_week=payload.day_of_week,
            start_time=payload.start_time,
            end_time=payload.end_time,
            overrides=parse_overrides(payload.overrides),
            weeks_ahead=payload.weeks_ahead,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return MoveSessionResponse(
        ok=moved is not None,
        validation=_validation_out(result),
        session=_placement_out(moved) if moved is not None else None,
    )


@router.post("/sessions/{session_id}/unschedule", response_model=UnscheduleResponse)
def unschedule_session(
    session_id: uuid.UUID,
    service: SchedulingService = Depends(get_scheduling_service),
) -> UnscheduleResponse:
    try:
        out = service.unschedule_session(session_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidSessionOperationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return UnscheduleResponse(session_id=session_id, instances_deleted=out["instances_deleted"])


@router.get("/version", response_model=VersionResponse)
def get_version(
    provider_id: uuid.UUID,
    school: SchoolRef = Depends(_school_from_query),
    service: SchedulingService = Depends(get_scheduling_service),
) -> VersionResponse:
    return VersionResponse(**service.current_version(provider_id, school.to_identifier()))


@router.get("/conflicts", response_model=ConflictReportOut)
def get_conflicts(
    provider_id: uuid.UUID,
    expected_fingerprint: str | None = Query(default=None),
    school: SchoolRef = Depends(_school_from_query),
    service: SchedulingService = Depends(get_scheduling_service),
) -> ConflictReportOut:
    report, stale = service.check_conflicts(provider_id, school.to_identifier(), expected_fingerprint)
    return ConflictReportOut(
        has_conflicts=report.has_conflicts or stale,
        stale=stale,
        version=report.version,
        persisted_fingerprint=report.persisted_fingerprint,
        concurrent_changes=[
            SessionChangeOut(kind=c.kind, session_id=c.session_id, detail=c.detail) for c in report.concurrent_changes
        ],
        conflicts=list(report.conflicts),
    )
