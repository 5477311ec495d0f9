from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.database import get_db
from models.bell_schedule import BellSchedule
from models.special_activity import SpecialActivity
from schemas.constraints import BellScheduleCreate, BellScheduleOut, SpecialActivityCreate, SpecialActivityOut
from scheduling.entities import split_grades
from scheduling.school import SchoolIdentifier


logger = logging.getLogger(__name__)


router = APIRouter()


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


@router.get("/bell-schedules", response_model=list[BellScheduleOut])
def list_bell_schedules(
    provider_id: uuid.UUID,
    school_site: str | None = Query(default=None),
    school_district: str | None = Query(default=None),
    school_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[BellScheduleOut]:
    school = SchoolIdentifier(school_site=school_site, school_district=school_district, school_id=school_id)
    q = school.apply_filter(select(BellSchedule).where(BellSchedule.provider_id == provider_id), BellSchedule)
    q = q.order_by(BellSchedule.day_of_week.asc(), BellSchedule.start_time.asc())
    return db.execute(q).scalars().all()


@router.post("/bell-schedules", response_model=BellScheduleOut)
def create_bell_schedule(
    payload: BellScheduleCreate,
    db: Session = Depends(get_db),
) -> BellScheduleOut:
    data = payload.model_dump()
    grades = split_grades(data["grade_level"])
    if not grades:
        raise HTTPException(status_code=400, detail="INVALID_GRADE_LEVEL")
    data["grade_level"] = ",".join(grades)
    for key in ("period_name", "school_site", "school_district", "school_id"):
        data[key] = _clean(data.get(key))
    if data["school_site"] is None and data["school_id"] is None:
        raise HTTPException(status_code=400, detail="SCHOOL_REQUIRED")

    row = BellSchedule(**data)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@router.get("/special-activities", response_model=list[SpecialActivityOut])
def list_special_activities(
    provider_id: uuid.UUID,
    school_site: str | None = Query(default=None),
    school_district: str | None = Query(default=None),
    school_id: str | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[SpecialActivityOut]:
    school = SchoolIdentifier(school_site=school_site, school_district=school_district, school_id=school_id)
    q = school.apply_filter(select(SpecialActivity).where(SpecialActivity.provider_id == provider_id), SpecialActivity)
    if not include_deleted:
        q = q.where(SpecialActivity.deleted_at.is_(None))
    q = q.order_by(SpecialActivity.day_of_week.asc(), SpecialActivity.start_time.asc())
    return db.execute(q).scalars().all()


@router.post("/special-activities", response_model=SpecialActivityOut)
def create_special_activity(
    payload: SpecialActivityCreate,
    db: Session = Depends(get_db),
) -> SpecialActivityOut:
    data = payload.model_dump()
    data["teacher_name"] = " ".join(str(data["teacher_name"]).split())
    if not data["teacher_name"]:
        raise HTTPException(status_code=400, detail="INVALID_TEACHER_NAME")
    for key in ("activity_name", "school_site", "school_district", "school_id"):
        data[key] = _clean(data.get(key))
    if data["school_site"] is None and data["school_id"] is None:
        raise HTTPException(status_code=400, detail="SCHOOL_REQUIRED")

    row = SpecialActivity(**data)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@router.delete("/special-activities/{activity_id}", response_model=SpecialActivityOut)
def delete_special_activity(
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> SpecialActivityOut:
    row = db.get(SpecialActivity, activity_id)
    if row is None or row.deleted_at is not None:
        raise HTTPException(status_code=404, detail="SPECIAL_ACTIVITY_NOT_FOUND")

    # Soft delete keeps history; deleted rows never block scheduling.
    row.deleted_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    logger.info("Soft-deleted special activity id=%s teacher=%s", row.id, row.teacher_name)
    return row
