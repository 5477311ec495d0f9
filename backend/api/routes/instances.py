from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from api.deps import get_scheduling_service
from core.database import get_db, validate_db_connection
from models.schedule_session import ScheduleSession
from schemas.instances import (
    GenerateAllInstancesRequest,
    GenerateAllInstancesResponse,
    GenerateInstancesRequest,
    GenerateInstancesResponse,
    SessionInstanceOut,
)
from services.scheduling_service import SchedulingService


logger = logging.getLogger(__name__)


router = APIRouter()


@router.post("/templates/{template_id}", response_model=GenerateInstancesResponse)
def generate_for_template(
    template_id: uuid.UUID,
    payload: GenerateInstancesRequest | None = None,
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
) -> GenerateInstancesResponse:
    payload = payload or GenerateInstancesRequest()
    template = db.get(ScheduleSession, template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="TEMPLATE_NOT_FOUND")

    result = service.instance_generator().create_instances_from_template(
        template,
        payload.weeks_ahead,
        until_date=payload.until_date,
        use_school_year_end=payload.use_school_year_end,
    )
    return GenerateInstancesResponse(
        success=result.success,
        instances_created=result.instances_created,
        instances=[
            SessionInstanceOut(
                id=i.id,
                template_id=i.template_id,
                student_id=i.student_id,
                session_date=i.session_date,
                day_of_week=i.day_of_week,
                start_time=i.start_time,
                end_time=i.end_time,
            )
            for i in result.instances
        ],
        error=result.error,
    )


@router.post("/generate-all", response_model=GenerateAllInstancesResponse)
def generate_for_all_templates(
    payload: GenerateAllInstancesRequest | None = None,
    db: Session = Depends(get_db),
    service: SchedulingService = Depends(get_scheduling_service),
) -> GenerateAllInstancesResponse:
    payload = payload or GenerateAllInstancesRequest()
    # Explicit connectivity validation before fanning out to worker sessions.
    validate_db_connection(db)
    result = service.instance_generator().generate_instances_for_all_templates(payload.weeks_ahead)
    if result.errors:
        logger.warning("Instance generation completed with %d error(s)", len(result.errors))
    return GenerateAllInstancesResponse(
        total=result.total,
        created=result.created,
        errors=result.errors,
        end_date=result.end_date,
    )
