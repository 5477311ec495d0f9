from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from core.config import Settings, settings as default_settings
from models.schedule_session import ScheduleSession
from models.student import Student
from scheduling.data_manager import DataManagerConfig, SchedulingDataManager
from scheduling.distribution import (
    DistributionConfig,
    DistributionContext,
    DistributionEngine,
    DistributionResult,
    DistributionStrategy,
    describe_result,
)
from scheduling.entities import SessionRecord, StudentInfo
from scheduling.errors import ConcurrentModificationError
from scheduling.school import SchoolIdentifier
from scheduling.timeutils import date_in_same_week
from scheduling.validator import ConstraintType, ConstraintValidator, ValidationContext, ValidationResult, ValidationRules
from services.scheduling_repository import SqlSchedulingRepository, session_record_from_row, student_info_from_row
from services.session_instances import SessionInstanceGenerator


logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    pass


class InvalidSessionOperationError(ValueError):
    pass


@dataclass
class ScheduleRunResult:
    results: list[DistributionResult]
    persisted: bool = False
    templates_created: int = 0
    placeholders_created: int = 0
    instances_created: int = 0
    instance_errors: list[str] = field(default_factory=list)
    version: int = 0
    fingerprint: str = ""


def delivered_by_for_role(provider_role: str | None) -> str:
    return "sea" if (provider_role or "").strip().lower() == "sea" else "provider"


class SchedulingService:
    """Request-scoped entry point wiring the data manager, validator, engine and generator."""

    def __init__(self, db: Session, *, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.repository = SqlSchedulingRepository(db)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def data_manager_config(self) -> DataManagerConfig:
        s = self.settings
        return DataManagerConfig(
            max_cache_age_seconds=s.cache_max_age_seconds,
            retry_attempts=s.fetch_retry_attempts,
            retry_delay_seconds=s.fetch_retry_delay_seconds,
            max_sessions_per_slot=s.scheduling_second_pass_limit,
        )

    def validation_rules(self) -> ValidationRules:
        s = self.settings
        return ValidationRules(
            max_sessions_per_slot=s.scheduling_second_pass_limit,
            max_sessions_per_day=s.scheduling_max_sessions_per_day,
            capacity_warning_threshold=s.scheduling_first_pass_limit,
        )

    def distribution_config(
        self,
        *,
        strategy: str | None = None,
        provider_role: str | None = None,
        prefer_morning: bool = False,
        prefer_afternoon: bool = False,
    ) -> DistributionConfig:
        s = self.settings
        return DistributionConfig(
            strategy=DistributionStrategy(strategy or s.scheduling_strategy),
            max_sessions_per_slot=s.scheduling_second_pass_limit,
            max_sessions_per_day=s.scheduling_max_sessions_per_day,
            prefer_morning=prefer_morning,
            prefer_afternoon=prefer_afternoon,
            first_pass_limit=s.scheduling_first_pass_limit,
            second_pass_limit=s.scheduling_second_pass_limit,
            slot_interval_minutes=s.scheduling_slot_interval_minutes,
            service_type=(provider_role or "resource").strip().lower(),
            delivered_by=delivered_by_for_role(provider_role),
        )

    def open_data_manager(
        self, provider_id: uuid.UUID, school: SchoolIdentifier, *, provider_role: str | None = None
    ) -> SchedulingDataManager:
        school = self.repository.resolve_school(school)
        dm = SchedulingDataManager(self.repository, self.data_manager_config())
        dm.initialize(
            provider_id,
            school.school_site,
            school.school_id,
            school_district=school.school_district,
            provider_role=provider_role,
        )
        return dm

    def instance_generator(self) -> SessionInstanceGenerator:
        factory = sessionmaker(bind=self.db.get_bind(), autoflush=False, autocommit=False)
        return SessionInstanceGenerator(
            factory,
            page_size=self.settings.instance_page_size,
            batch_size=self.settings.instance_batch_size,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def validate_placement(
        self,
        *,
        provider_id: uuid.UUID,
        school: SchoolIdentifier,
        student_id: uuid.UUID,
        day_of_week: int,
        start_time: time,
        end_time: time,
        exclude_session_ids: Iterable[uuid.UUID] = (),
        overrides: Iterable[ConstraintType] = (),
    ) -> ValidationResult:
        student = self._get_student(student_id)
        dm = self.open_data_manager(provider_id, school)
        try:
            validator = ConstraintValidator(dm, self.validation_rules())
            ctx = ValidationContext.build(
                provider_id, dm.school, day_of_week, start_time, end_time, exclude_session_ids=exclude_session_ids
            )
            return validator.validate(ctx, student, overrides=overrides)
        finally:
            dm.dispose()

    def schedule_students(
        self,
        *,
        provider_id: uuid.UUID,
        school: SchoolIdentifier,
        provider_role: str | None = None,
        student_ids: Iterable[uuid.UUID] | None = None,
        strategy: str | None = None,
        prefer_morning: bool = False,
        prefer_afternoon: bool = False,
        persist: bool = False,
        weeks_ahead: int | None = None,
        expected_fingerprint: str | None = None,
    ) -> ScheduleRunResult:
        dm = self.open_data_manager(provider_id, school, provider_role=provider_role)
        try:
            if expected_fingerprint is not None and expected_fingerprint != dm.loaded_fingerprint:
                raise ConcurrentModificationError(
                    "Schedule changed since it was loaded; refresh and retry",
                    expected=expected_fingerprint,
                    actual=dm.loaded_fingerprint,
                )

            config = self.distribution_config(
                strategy=strategy,
                provider_role=provider_role,
                prefer_morning=prefer_morning,
                prefer_afternoon=prefer_afternoon,
            )
            students = self.repository.fetch_students(provider_id, dm.school, student_ids)
            existing = self.repository.count_scheduled_templates(provider_id, [s.id for s in students])
            needed = {s.id: max(0, s.sessions_per_week - existing.get(s.id, 0)) for s in students}
            students = [s for s in students if needed[s.id] > 0]

            snapshot = dm.prepare_for_snapshot()
            engine = DistributionEngine(dm, ConstraintValidator(dm, self.validation_rules()))
            results = engine.distribute_many(students, config, DistributionContext(provider_id, dm.school), sessions_needed=needed)
            for r in results:
                logger.debug("Distribution result %s", describe_result(r))

            run = ScheduleRunResult(results=results, version=dm.get_version(), fingerprint=dm.loaded_fingerprint)
            if not persist:
                dm.restore_from_snapshot(snapshot)
                return run

            try:
                self._persist(dm, results, config, run)
            except Exception:
                self.db.rollback()
                dm.restore_from_snapshot(snapshot)
                logger.exception("Persisting schedule failed provider_id=%s; rolled back", provider_id)
                raise

            run.persisted = True
            run.fingerprint = dm.fetch_persisted_fingerprint()
            if weeks_ahead is None:
                weeks_ahead = self.settings.instance_weeks_ahead
            generator = self.instance_generator()
            for r in results:
                for placement in r.placements:
                    outcome = generator.create_instances_from_template(placement, weeks_ahead)
                    if outcome.success:
                        run.instances_created += outcome.instances_created
                    else:
                        run.instance_errors.append(f"Template {placement.id}: {outcome.error}")
            run.version = dm.get_version()
            return run
        finally:
            dm.dispose()

    def _persist(
        self,
        dm: SchedulingDataManager,
        results: list[DistributionResult],
        config: DistributionConfig,
        run: ScheduleRunResult,
    ) -> None:
        actual = dm.fetch_persisted_fingerprint()
        if actual != dm.loaded_fingerprint:
            raise ConcurrentModificationError(
                "Sessions were modified by another writer during scheduling",
                expected=dm.loaded_fingerprint,
                actual=actual,
            )

        # Placeholders from earlier runs are replaced by this run's outcome.
        self.db.execute(
            delete(ScheduleSession)
            .where(ScheduleSession.provider_id == dm.provider_id)
            .where(ScheduleSession.student_id.in_([r.student_id for r in results]))
            .where(ScheduleSession.session_date.is_(None))
            .where(ScheduleSession.day_of_week.is_(None))
        )
        for r in results:
            for p in r.placements:
                self.db.add(_template_row(p))
                run.templates_created += 1
            for u in r.unscheduled:
                for _ in range(u.count):
                    self.db.add(
                        ScheduleSession(
                            id=uuid.uuid4(),
                            student_id=r.student_id,
                            provider_id=dm.provider_id,
                            service_type=config.service_type,
                            delivered_by=config.delivered_by,
                            is_template=True,
                        )
                    )
                    run.placeholders_created += 1
        self.db.commit()
        logger.info(
            "Persisted schedule provider_id=%s templates=%d placeholders=%d",
            dm.provider_id,
            run.templates_created,
            run.placeholders_created,
        )

    def move_session(
        self,
        session_id: uuid.UUID,
        *,
        school: SchoolIdentifier,
        day_of_week: int,
        start_time: time,
        end_time: time,
        overrides: Iterable[ConstraintType] = (),
        weeks_ahead: int | None = None,
        today: date | None = None,
    ) -> tuple[ValidationResult, SessionRecord | None]:
        """Move a session; on success a template's future instances are regenerated.

        A dated instance moves within its own week.
        """

        row = self._get_session(session_id)
        student = self._get_student(row.student_id)
        dm = self.open_data_manager(row.provider_id, school)
        try:
            validator = ConstraintValidator(dm, self.validation_rules())
            result = validator.validate_session_move(
                session_record_from_row(row),
                student,
                day_of_week,
                start_time,
                end_time,
                school=dm.school,
                overrides=overrides,
                today=today,
            )
        finally:
            dm.dispose()
        if not result.is_valid:
            return result, None

        if row.session_date is not None:
            row.session_date = date_in_same_week(row.session_date, day_of_week)
        row.day_of_week = day_of_week
        row.start_time = start_time
        row.end_time = end_time
        row.manually_placed = True
        self.db.commit()
        self.db.refresh(row)
        moved = session_record_from_row(row)

        if moved.session_date is None:
            generator = self.instance_generator()
            today = today or date.today()
            generator.delete_future_instances(moved.id, today)
            generator.create_instances_from_template(moved, weeks_ahead or self.settings.instance_weeks_ahead)
        logger.info("Moved session_id=%s to day=%s %s-%s", session_id, day_of_week, start_time, end_time)
        return result, moved

    def unschedule_session(self, session_id: uuid.UUID, *, today: date | None = None) -> dict[str, Any]:
        """Turn a template back into an unscheduled placeholder."""

        row = self._get_session(session_id)
        if row.session_date is not None:
            raise InvalidSessionOperationError("INSTANCE_CANNOT_BE_UNSCHEDULED")
        deleted = self.instance_generator().delete_future_instances(row.id, today or date.today())
        row.day_of_week = None
        row.start_time = None
        row.end_time = None
        row.manually_placed = False
        self.db.commit()
        logger.info("Unscheduled session_id=%s (removed %d future instances)", session_id, deleted)
        return {"session_id": str(session_id), "instances_deleted": deleted}

    def current_version(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> dict[str, Any]:
        dm = self.open_data_manager(provider_id, school)
        try:
            return {
                "version": dm.get_version(),
                "fingerprint": dm.loaded_fingerprint,
                "school_key": dm.school.key(),
                "loaded_at": datetime.now().isoformat(timespec="seconds"),
                "metrics": dm.get_metrics(),
            }
        finally:
            dm.dispose()

    def check_conflicts(self, provider_id: uuid.UUID, school: SchoolIdentifier, expected_fingerprint: str | None):
        dm = self.open_data_manager(provider_id, school)
        try:
            report = dm.check_for_conflicts()
            stale = expected_fingerprint is not None and expected_fingerprint != report.persisted_fingerprint
            return report, stale
        finally:
            dm.dispose()

    # ------------------------------------------------------------------

    def _get_student(self, student_id: uuid.UUID) -> StudentInfo:
        row = self.db.get(Student, student_id)
        if row is None:
            raise RecordNotFoundError("STUDENT_NOT_FOUND")
        return student_info_from_row(row)

    def _get_session(self, session_id: uuid.UUID) -> ScheduleSession:
        row = self.db.execute(select(ScheduleSession).where(ScheduleSession.id == session_id)).scalars().first()
        if row is None:
            raise RecordNotFoundError("SESSION_NOT_FOUND")
        return row


def _template_row(p: SessionRecord) -> ScheduleSession:
    return ScheduleSession(
        id=p.id,
        student_id=p.student_id,
        provider_id=p.provider_id,
        service_type=p.service_type,
        day_of_week=p.day_of_week,
        start_time=p.start_time,
        end_time=p.end_time,
        delivered_by=p.delivered_by,
        is_template=True,
        manually_placed=False,
    )
