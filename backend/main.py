from __future__ import annotations

import logging

import psycopg2
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from sqlalchemy import text
from sqlalchemy.exc import OperationalError as SAOperationalError

from api.router import api_router
from core.config import settings
from core.database import DatabaseUnavailableError, ENGINE, is_transient_db_connectivity_error
from core.logging import setup_logging
from scheduling.errors import (
    ConcurrentModificationError,
    DataFetchError,
    InitializationError,
    InstanceGenerationError,
)


logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": code, "message": message, **extra})


def _db_error_response(exc: Exception) -> JSONResponse:
    if is_transient_db_connectivity_error(exc):
        logger.warning("Database transient connectivity error (503)", exc_info=exc)
        return _error(503, "DATABASE_UNAVAILABLE", "Database temporarily unavailable. Please retry.")
    logger.error("Database operation failed", exc_info=exc)
    return _error(500, "DATABASE_ERROR", "Database operation failed.")


def create_app() -> FastAPI:
    setup_logging(environment=settings.environment)
    is_production = settings.environment.lower() == "production"
    app = FastAPI(
        title="Caseload Scheduler API",
        version="0.1.0",
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
    )

    @app.exception_handler(DatabaseUnavailableError)
    def _db_unavailable(_request, _exc: DatabaseUnavailableError):
        logger.warning("Database unavailable (503)", exc_info=_exc)
        return _error(503, "DATABASE_UNAVAILABLE", "Database temporarily unavailable. Please retry.")

    @app.exception_handler(SAOperationalError)
    def _sqlalchemy_operational_error(_request, exc: SAOperationalError):
        return _db_error_response(exc)

    @app.exception_handler(psycopg2.OperationalError)
    def _psycopg2_operational_error(_request, exc: psycopg2.OperationalError):
        return _db_error_response(exc)

    @app.exception_handler(DataFetchError)
    def _data_fetch_error(_request, exc: DataFetchError):
        logger.warning("Scheduling data could not be loaded (503): %s", exc)
        return _error(503, "SCHEDULING_DATA_UNAVAILABLE", str(exc), source=exc.source)

    @app.exception_handler(InitializationError)
    def _initialization_error(_request, exc: InitializationError):
        return _error(400, "SCHEDULING_SCOPE_INVALID", str(exc))

    @app.exception_handler(ConcurrentModificationError)
    def _concurrent_modification(_request, exc: ConcurrentModificationError):
        logger.info("Concurrent schedule modification (409): %s", exc)
        return _error(409, "SCHEDULE_MODIFIED", str(exc), expected=exc.expected, actual=exc.actual)

    @app.exception_handler(InstanceGenerationError)
    def _instance_generation_error(_request, exc: InstanceGenerationError):
        return _error(
            422,
            "INSTANCE_GENERATION_FAILED",
            str(exc),
            template_id=str(exc.template_id) if exc.template_id is not None else None,
        )

    allow_origins = [settings.frontend_origin]
    allow_origin_regex = None
    if not is_production:
        # Dev-friendly: allow the configured origin and any localhost port.
        allow_origins.extend(["http://localhost:5173", "http://127.0.0.1:5173"])
        allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> dict:
        # Always respond; reflect DB availability without crashing.
        db_status = "ok"
        try:
            with ENGINE.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SAOperationalError:
            db_status = "down"

        return {"app": "ok", "database": db_status}

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
