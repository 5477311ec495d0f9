from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.schedule_session import ScheduleSession
from scheduling.entities import SessionRecord
from scheduling.errors import InstanceGenerationError
from scheduling.timeutils import python_weekday
from services.scheduling_repository import session_record_from_row


logger = logging.getLogger(__name__)

SCHOOL_YEAR_END_MONTH = 6
SCHOOL_YEAR_END_DAY = 30


@dataclass(frozen=True)
class InstanceGenerationResult:
    success: bool
    instances_created: int = 0
    instances: tuple[SessionRecord, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class BatchGenerationResult:
    total: int
    created: int
    errors: list[str] = field(default_factory=list)
    end_date: date | None = None


def school_year_end(today: date) -> date:
    end = date(today.year, SCHOOL_YEAR_END_MONTH, SCHOOL_YEAR_END_DAY)
    return end if today <= end else date(today.year + 1, SCHOOL_YEAR_END_MONTH, SCHOOL_YEAR_END_DAY)


def occurrence_dates(
    template: SessionRecord,
    *,
    now: datetime,
    weeks_ahead: int,
    until_date: date | None = None,
) -> list[date]:
    """Upcoming dates for a weekly template.

    Today counts when it is the right weekday and the session has not started.
    With ``until_date`` every occurrence up to and including that date is
    returned; otherwise exactly ``weeks_ahead`` occurrences.
    """

    today = now.date()
    offset = (python_weekday(template.day_of_week) - today.weekday()) % 7
    if offset == 0 and now.time() >= template.start_time:
        offset = 7
    first = today + timedelta(days=offset)

    if until_date is not None:
        dates = []
        current = first
        while current <= until_date:
            dates.append(current)
            current += timedelta(weeks=1)
        return dates
    return [first + timedelta(weeks=i) for i in range(max(0, weeks_ahead))]


class SessionInstanceGenerator:
    """Materializes dated instances from weekly template sessions.

    Generation is idempotent: only dates missing for a template's identity are
    inserted. Writes for one template are serialized in-process; the unique
    (template_id, session_date) constraint backs that up across processes.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        page_size: int = 1000,
        batch_size: int = 10,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.session_factory = session_factory
        self.page_size = page_size
        self.batch_size = batch_size
        self._clock = clock
        # template id -> (lock, number of callers holding or waiting on it)
        self._locks: dict[uuid.UUID, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _template_lock(self, template_id: uuid.UUID) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(template_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[template_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                _lock, users = self._locks[template_id]
                if users <= 1:
                    del self._locks[template_id]
                else:
                    self._locks[template_id] = (lock, users - 1)

    def create_instances_from_template(
        self,
        template: SessionRecord | ScheduleSession,
        weeks_ahead: int = 8,
        *,
        until_date: date | None = None,
        use_school_year_end: bool = False,
        now: datetime | None = None,
    ) -> InstanceGenerationResult:
        record = template if isinstance(template, SessionRecord) else session_record_from_row(template)
        now = now or self._clock()
        try:
            _check_template(record)
            if until_date is None and use_school_year_end:
                until_date = school_year_end(now.date())
            dates = occurrence_dates(record, now=now, weeks_ahead=weeks_ahead, until_date=until_date)
            with self._template_lock(record.id):
                created = self._insert_missing(record, dates)
        except InstanceGenerationError as exc:
            logger.warning("Instance generation failed template_id=%s: %s", record.id, exc)
            return InstanceGenerationResult(success=False, error=str(exc))

        if created:
            logger.info("Created %d instance(s) for template_id=%s", len(created), record.id)
        return InstanceGenerationResult(success=True, instances_created=len(created), instances=tuple(created))

    def _insert_missing(self, template: SessionRecord, dates: list[date]) -> list[SessionRecord]:
        if not dates:
            return []
        db = self.session_factory()
        try:
            q = (
                select(ScheduleSession.session_date)
                .where(ScheduleSession.student_id == template.student_id)
                .where(ScheduleSession.provider_id == template.provider_id)
                .where(ScheduleSession.service_type == template.service_type)
                .where(ScheduleSession.day_of_week == template.day_of_week)
                .where(ScheduleSession.start_time == template.start_time)
                .where(ScheduleSession.end_time == template.end_time)
                .where(ScheduleSession.session_date.in_(dates))
            )
            existing = set(db.execute(q).scalars().all())
            rows = [_instance_row(template, d) for d in dates if d not in existing]
            if not rows:
                return []
            created = [session_record_from_row(r) for r in rows]
            db.add_all(rows)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise InstanceGenerationError(
                    "Instances for this template were written concurrently; retry", template_id=template.id
                ) from exc
            return created
        finally:
            db.close()

    def generate_instances_for_all_templates(
        self, weeks_ahead: int = 8, *, now: datetime | None = None
    ) -> BatchGenerationResult:
        now = now or self._clock()
        templates = self._load_templates()
        created = 0
        errors: list[str] = []

        def _one(template: SessionRecord) -> InstanceGenerationResult:
            return self.create_instances_from_template(template, weeks_ahead, now=now)

        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, len(templates), self.batch_size):
                batch = templates[start : start + self.batch_size]
                for template, result in zip(batch, pool.map(_one, batch)):
                    if result.success:
                        created += result.instances_created
                    else:
                        errors.append(f"Template {template.id}: {result.error}")

        end_date = now.date() + timedelta(weeks=weeks_ahead)
        logger.info(
            "Instance generation finished templates=%d created=%d errors=%d end_date=%s",
            len(templates),
            created,
            len(errors),
            end_date,
        )
        return BatchGenerationResult(total=len(templates), created=created, errors=errors, end_date=end_date)

    def _load_templates(self) -> list[SessionRecord]:
        templates: list[SessionRecord] = []
        offset = 0
        db = self.session_factory()
        try:
            while True:
                q = (
                    select(ScheduleSession)
                    .where(ScheduleSession.session_date.is_(None))
                    .where(ScheduleSession.day_of_week.is_not(None))
                    .where(ScheduleSession.start_time.is_not(None))
                    .where(ScheduleSession.end_time.is_not(None))
                    .order_by(ScheduleSession.id)
                    .limit(self.page_size)
                    .offset(offset)
                )
                page = db.execute(q).scalars().all()
                templates.extend(session_record_from_row(r) for r in page)
                if len(page) < self.page_size:
                    break
                offset += self.page_size
        finally:
            db.close()
        return templates

    def delete_future_instances(self, template_id: uuid.UUID, from_date: date) -> int:
        """Drop uncompleted instances on or after ``from_date`` (template moved or unscheduled)."""

        db = self.session_factory()
        try:
            result = db.execute(
                delete(ScheduleSession)
                .where(ScheduleSession.template_id == template_id)
                .where(ScheduleSession.session_date >= from_date)
                .where(ScheduleSession.is_completed.is_(False))
            )
            db.commit()
            return int(result.rowcount or 0)
        finally:
            db.close()


def _check_template(template: SessionRecord) -> None:
    if template.session_date is not None:
        raise InstanceGenerationError("Session is an instance, not a template", template_id=template.id)
    if template.day_of_week is None or template.start_time is None or template.end_time is None:
        raise InstanceGenerationError("Template is missing day_of_week, start_time or end_time", template_id=template.id)
    if template.student_id is None or template.provider_id is None:
        raise InstanceGenerationError("Template is missing student_id or provider_id", template_id=template.id)


def _instance_row(template: SessionRecord, session_date: date) -> ScheduleSession:
    return ScheduleSession(
        id=uuid.uuid4(),
        student_id=template.student_id,
        provider_id=template.provider_id,
        service_type=template.service_type,
        day_of_week=template.day_of_week,
        start_time=template.start_time,
        end_time=template.end_time,
        session_date=session_date,
        delivered_by=template.delivered_by,
        assigned_to_specialist_id=template.assigned_to_specialist_id,
        assigned_to_sea_id=template.assigned_to_sea_id,
        group_id=template.group_id,
        group_name=template.group_name,
        manually_placed=template.manually_placed,
        status=template.status,
        template_id=template.id,
        is_template=False,
        student_absent=False,
        is_completed=False,
    )
