from __future__ import annotations

from fastapi import APIRouter

from api.routes import constraints, instances, scheduling


api_router = APIRouter()
api_router.include_router(scheduling.router, prefix="/scheduling", tags=["scheduling"])
api_router.include_router(instances.router, prefix="/instances", tags=["instances"])
api_router.include_router(constraints.router, prefix="/constraints", tags=["constraints"])
