from __future__ import annotations

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from core.database import get_db
from scheduling.validator import ConstraintType
from services.scheduling_service import SchedulingService


def get_scheduling_service(db: Session = Depends(get_db)) -> SchedulingService:
    return SchedulingService(db)


def parse_overrides(values: list[str]) -> list[ConstraintType]:
    out: list[ConstraintType] = []
    for v in values:
        try:
            out.append(ConstraintType(v.strip().lower()))
        except ValueError:
            raise HTTPException(status_code=400, detail="UNKNOWN_CONSTRAINT_OVERRIDE")
    return out
