"""Tests for dated instance generation from weekly templates."""

import uuid
from datetime import date, datetime, time

import pytest
from sqlalchemy import select

from models.schedule_session import ScheduleSession
from scheduling.entities import SessionRecord
from services.scheduling_repository import session_record_from_row
from services.session_instances import SessionInstanceGenerator, occurrence_dates, school_year_end
from fakes import make_session, seed_session, seed_student

# 2026-03-02 is a Monday.
MONDAY_EARLY = datetime(2026, 3, 2, 7, 0)
MONDAY_LATE = datetime(2026, 3, 2, 10, 0)


@pytest.fixture
def generator(session_factory):
    return SessionInstanceGenerator(session_factory, batch_size=2, clock=lambda: MONDAY_EARLY)


@pytest.fixture
def template(db):
    student = seed_student(db)
    return seed_session(db, student, 1, time(9, 0), time(9, 30))


def make_session_for(day):
    return make_session(uuid.uuid4(), day, "09:00", "09:30")


def instance_dates(db, template_id):
    q = select(ScheduleSession.session_date).where(ScheduleSession.template_id == template_id)
    return sorted(db.execute(q).scalars().all())


class TestOccurrenceDates:
    def test_today_counts_before_the_session_starts(self):
        record = make_session_for(1)
        dates = occurrence_dates(record, now=MONDAY_EARLY, weeks_ahead=2)
        assert dates == [date(2026, 3, 2), date(2026, 3, 9)]

    def test_today_is_skipped_once_the_session_has_started(self):
        record = make_session_for(1)
        dates = occurrence_dates(record, now=MONDAY_LATE, weeks_ahead=2)
        assert dates == [date(2026, 3, 9), date(2026, 3, 16)]

    def test_later_weekday_in_the_same_week(self):
        assert occurrence_dates(make_session_for(3), now=MONDAY_LATE, weeks_ahead=1) == [date(2026, 3, 4)]

    def test_until_date_wins_over_weeks_ahead(self):
        dates = occurrence_dates(make_session_for(1), now=MONDAY_EARLY, weeks_ahead=8, until_date=date(2026, 3, 20))
        assert dates == [date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16)]

    def test_school_year_end_rolls_over_in_summer(self):
        assert school_year_end(date(2026, 3, 2)) == date(2026, 6, 30)
        assert school_year_end(date(2026, 6, 30)) == date(2026, 6, 30)
        assert school_year_end(date(2026, 7, 1)) == date(2027, 6, 30)


class TestCreateInstances:
    def test_creates_one_instance_per_week(self, db, generator, template):
        result = generator.create_instances_from_template(template, 8)
        assert result.success
        assert result.instances_created == 8
        dates = instance_dates(db, template.id)
        assert dates[0] == date(2026, 3, 2)
        assert dates[-1] == date(2026, 4, 20)
        assert all(i.template_id == template.id and not i.is_template for i in result.instances)

    def test_generation_is_idempotent(self, db, generator, template):
        assert generator.create_instances_from_template(template, 4).instances_created == 4
        again = generator.create_instances_from_template(template, 4)
        assert again.success
        assert again.instances_created == 0
        assert len(instance_dates(db, template.id)) == 4
        assert generator._locks == {}

    def test_existing_matching_instance_is_not_duplicated(self, db, generator, template):
        manual = ScheduleSession(
            student_id=template.student_id,
            provider_id=template.provider_id,
            service_type="resource",
            day_of_week=1,
            start_time=time(9, 0),
            end_time=time(9, 30),
            session_date=date(2026, 3, 9),
        )
        db.add(manual)
        db.commit()

        result = generator.create_instances_from_template(template, 4)
        assert result.instances_created == 3
        assert date(2026, 3, 9) not in [i.session_date for i in result.instances]

    def test_school_year_end(self, generator, template):
        result = generator.create_instances_from_template(template, use_school_year_end=True)
        assert result.instances_created == 18
        assert max(i.session_date for i in result.instances) == date(2026, 6, 29)

    def test_instances_are_rejected_as_templates(self, db, generator, template):
        generator.create_instances_from_template(template, 1)
        instance = db.execute(
            select(ScheduleSession).where(ScheduleSession.template_id == template.id)
        ).scalars().first()
        result = generator.create_instances_from_template(instance, 1)
        assert not result.success
        assert "instance" in result.error

    def test_placeholder_templates_are_rejected(self, db, generator):
        placeholder = seed_session(db, seed_student(db), None, None, None)
        result = generator.create_instances_from_template(placeholder, 1)
        assert not result.success
        assert "missing" in result.error

    def test_accepts_session_records(self, db, generator, template):
        record = session_record_from_row(template)
        assert isinstance(record, SessionRecord)
        assert generator.create_instances_from_template(record, 2, now=MONDAY_LATE).instances_created == 2
        assert instance_dates(db, template.id) == [date(2026, 3, 9), date(2026, 3, 16)]


class TestBatchGeneration:
    def test_generates_for_every_template_once(self, db, session_factory):
        student = seed_student(db)
        monday = seed_session(db, student, 1, time(9, 0), time(9, 30))
        thursday = seed_session(db, student, 4, time(13, 0), time(13, 30))
        seed_session(db, student, None, None, None)
        seed_session(db, student, 2, time(10, 0), time(10, 30), session_date=date(2026, 3, 3))

        generator = SessionInstanceGenerator(session_factory, page_size=1, batch_size=2)
        first = generator.generate_instances_for_all_templates(4, now=MONDAY_EARLY)
        assert first.total == 2
        assert first.created == 8
        assert first.errors == []
        assert first.end_date == date(2026, 3, 30)

        second = generator.generate_instances_for_all_templates(4, now=MONDAY_EARLY)
        assert second.created == 0
        assert len(instance_dates(db, monday.id)) == 4
        assert len(instance_dates(db, thursday.id)) == 4
        assert generator._locks == {}

    def test_delete_future_instances_keeps_completed_ones(self, db, generator, template):
        generator.create_instances_from_template(template, 4)
        completed = db.execute(
            select(ScheduleSession)
            .where(ScheduleSession.template_id == template.id)
            .where(ScheduleSession.session_date == date(2026, 3, 23))
        ).scalars().one()
        completed.is_completed = True
        db.commit()

        deleted = generator.delete_future_instances(template.id, date(2026, 3, 9))
        assert deleted == 2
        db.expire_all()
        assert instance_dates(db, template.id) == [date(2026, 3, 2), date(2026, 3, 23)]
