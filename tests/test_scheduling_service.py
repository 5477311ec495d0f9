"""Tests for the request-scoped scheduling service against SQLite."""

import uuid
from datetime import date, time, timedelta

import pytest
from sqlalchemy import select

from core.config import Settings
from models.provider_work_schedule import ProviderWorkSchedule
from models.schedule_session import ScheduleSession
from models.school import School
from scheduling.data_manager import SchedulingDataManager
from scheduling.errors import ConcurrentModificationError, InitializationError
from scheduling.school import SchoolIdentifier
from scheduling.timeutils import add_minutes
from services.scheduling_repository import SqlSchedulingRepository
from services.scheduling_service import (
    InvalidSessionOperationError,
    RecordNotFoundError,
    SchedulingService,
    delivered_by_for_role,
)
from fakes import PROVIDER_ID, SCHOOL, seed_session, seed_student


@pytest.fixture
def service(db):
    settings = Settings(database_url="sqlite://", fetch_retry_delay_seconds=0, instance_batch_size=2)
    return SchedulingService(db, settings=settings)


def templates(db, student_id=None):
    q = select(ScheduleSession).where(ScheduleSession.session_date.is_(None))
    if student_id is not None:
        q = q.where(ScheduleSession.student_id == student_id)
    return db.execute(q).scalars().all()


def instances(db, template_id):
    q = select(ScheduleSession).where(ScheduleSession.template_id == template_id)
    return db.execute(q).scalars().all()


class TestRepository:
    def test_sessions_are_scoped_to_the_school(self, db):
        here = seed_student(db, initials="AA")
        there = seed_student(db, initials="BB", school=SchoolIdentifier(school_site="Jefferson Middle"))
        seed_session(db, here, 1, time(9, 0), time(9, 30))
        seed_session(db, there, 1, time(9, 0), time(9, 30))
        seed_session(db, here, 1, time(9, 0), time(9, 30), session_date=date(2026, 3, 2))

        repo = SqlSchedulingRepository(db)
        sessions = repo.fetch_sessions(PROVIDER_ID, SCHOOL)
        assert [s.student_id for s in sessions] == [here.id]
        assert sessions[0].grade_level == "3"
        assert [s.initials for s in repo.fetch_students(PROVIDER_ID, SCHOOL)] == ["AA"]

    def test_specialists_see_sessions_assigned_to_them_at_this_school(self, db):
        other_provider = uuid.uuid4()
        mine = seed_student(db, initials="AA")
        theirs = seed_student(db, initials="BB", provider_id=other_provider)
        elsewhere = seed_student(
            db, initials="CC", provider_id=other_provider, school=SchoolIdentifier(school_site="Jefferson Middle")
        )
        own = seed_session(db, mine, 1, time(9, 0), time(9, 30))
        assigned = seed_session(db, theirs, 2, time(9, 0), time(9, 30), assigned_to=PROVIDER_ID)
        seed_session(db, elsewhere, 3, time(9, 0), time(9, 30), assigned_to=PROVIDER_ID)
        seed_session(db, theirs, 4, time(9, 0), time(9, 30))

        repo = SqlSchedulingRepository(db)
        assert [s.id for s in repo.fetch_sessions(PROVIDER_ID, SCHOOL)] == [own.id]
        assert [s.id for s in repo.fetch_sessions(PROVIDER_ID, SCHOOL, "Speech")] == [own.id, assigned.id]
        assert [s.id for s in repo.fetch_sessions(PROVIDER_ID, SCHOOL, "sea")] == [own.id]

    def test_placeholders_do_not_count_as_scheduled(self, db):
        student = seed_student(db)
        seed_session(db, student, 1, time(9, 0), time(9, 30))
        seed_session(db, student, None, None, None)
        counts = SqlSchedulingRepository(db).count_scheduled_templates(PROVIDER_ID, [student.id])
        assert counts == {student.id: 1}

    def test_resolve_school_uses_the_directory(self, db):
        db.add(School(id="0601", name="Lincoln Elementary", district_name="Unified", district_id="06"))
        db.commit()
        resolved = SqlSchedulingRepository(db).resolve_school(SCHOOL)
        assert resolved.school_id == "0601"
        assert resolved.school_site == "Lincoln Elementary"


class TestScheduleStudents:
    def test_dry_run_writes_nothing(self, db, service):
        seed_student(db, sessions=2)
        run = service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=False)
        assert not run.persisted
        assert len(run.results[0].placements) == 2
        assert templates(db) == []

    def test_persist_creates_templates_and_instances(self, db, service):
        a = seed_student(db, initials="AA", sessions=2)
        b = seed_student(db, initials="BB", sessions=1)

        run = service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=True, weeks_ahead=2)

        assert run.persisted
        assert run.templates_created == 3
        assert run.placeholders_created == 0
        assert run.instances_created == 6
        assert run.instance_errors == []
        assert len(templates(db, a.id)) == 2
        assert len(templates(db, b.id)) == 1
        assert run.fingerprint == service.current_version(PROVIDER_ID, SCHOOL)["fingerprint"]

    def test_rerun_only_fills_what_is_missing(self, db, service):
        seed_student(db, sessions=2)
        service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=True, weeks_ahead=1)
        again = service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=True, weeks_ahead=1)
        assert again.results == []
        assert again.templates_created == 0
        assert len(templates(db)) == 2

    def test_unplaceable_sessions_become_placeholders(self, db, service):
        student = seed_student(db, sessions=3)
        db.add(
            ProviderWorkSchedule(
                provider_id=PROVIDER_ID,
                day_of_week=1,
                school_site=SCHOOL.school_site,
                school_district=SCHOOL.school_district,
            )
        )
        db.commit()

        run = service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=True, weeks_ahead=1)

        assert run.templates_created == 2
        assert run.placeholders_created == 1
        rows = templates(db, student.id)
        assert sorted(r.is_scheduled for r in rows) == [False, True, True]

    def test_stale_fingerprint_is_rejected(self, db, service):
        seed_student(db)
        with pytest.raises(ConcurrentModificationError):
            service.schedule_students(
                provider_id=PROVIDER_ID, school=SCHOOL, persist=True, expected_fingerprint="not-the-current-one"
            )
        assert templates(db) == []

    def test_concurrent_writer_rolls_back(self, db, service, monkeypatch):
        seed_student(db)
        monkeypatch.setattr(SchedulingDataManager, "fetch_persisted_fingerprint", lambda self: "someone-else")
        with pytest.raises(ConcurrentModificationError):
            service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=True)
        assert templates(db) == []

    def test_school_is_required(self, service):
        with pytest.raises(InitializationError):
            service.schedule_students(provider_id=PROVIDER_ID, school=SchoolIdentifier())

    def test_sea_placements_are_delivered_by_sea(self, db, service):
        seed_student(db, sessions=1)
        run = service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, provider_role="sea")
        assert run.results[0].placements[0].delivered_by == "sea"
        assert delivered_by_for_role("Resource") == "provider"


class TestEditing:
    @pytest.fixture
    def scheduled(self, db, service):
        student = seed_student(db, sessions=2)
        service.schedule_students(provider_id=PROVIDER_ID, school=SCHOOL, persist=True, weeks_ahead=2)
        return student, templates(db, student.id)[0]

    def test_move_regenerates_future_instances(self, db, service, scheduled):
        _student, template = scheduled
        result, moved = service.move_session(
            template.id, school=SCHOOL, day_of_week=4, start_time=time(13, 0), end_time=time(13, 30), weeks_ahead=2
        )
        assert result.is_valid
        assert moved.day_of_week == 4
        db.expire_all()
        rows = instances(db, template.id)
        assert len(rows) == 2
        assert {r.day_of_week for r in rows} == {4}
        assert db.get(ScheduleSession, template.id).manually_placed

    def test_invalid_move_changes_nothing(self, db, service, scheduled):
        _student, template = scheduled
        before = (template.day_of_week, template.start_time)
        result, moved = service.move_session(
            template.id, school=SCHOOL, day_of_week=6, start_time=time(9, 0), end_time=time(9, 30)
        )
        assert moved is None
        assert "work_location" in result.error_types()
        db.expire_all()
        row = db.get(ScheduleSession, template.id)
        assert (row.day_of_week, row.start_time) == before

    def test_unschedule_turns_template_into_placeholder(self, db, service, scheduled):
        _student, template = scheduled
        out = service.unschedule_session(template.id)
        assert out["instances_deleted"] == 2
        db.expire_all()
        row = db.get(ScheduleSession, template.id)
        assert not row.is_scheduled
        assert instances(db, template.id) == []

    def test_instance_moves_within_its_week(self, db, service, scheduled):
        _student, template = scheduled
        instance = instances(db, template.id)[0]
        old_date = instance.session_date
        target_day = 1 if instance.day_of_week != 1 else 2

        result, moved = service.move_session(
            instance.id,
            school=SCHOOL,
            day_of_week=target_day,
            start_time=time(13, 0),
            end_time=time(13, 30),
            today=old_date - timedelta(days=7),
        )

        assert result.is_valid
        assert moved.session_date == old_date + timedelta(days=target_day - instance.day_of_week)
        assert (moved.session_date.weekday() + 1) % 7 == target_day
        assert moved.template_id == template.id

    def test_instance_shift_ignores_its_own_template(self, db, service, scheduled):
        _student, template = scheduled
        instance = instances(db, template.id)[0]
        result, _moved = service.move_session(
            instance.id,
            school=SCHOOL,
            day_of_week=instance.day_of_week,
            start_time=add_minutes(instance.start_time, 15),
            end_time=add_minutes(instance.end_time, 15),
            today=instance.session_date,
        )
        assert "session_overlap" not in result.error_types()

    def test_instances_cannot_be_unscheduled(self, db, service, scheduled):
        _student, template = scheduled
        instance = instances(db, template.id)[0]
        with pytest.raises(InvalidSessionOperationError):
            service.unschedule_session(instance.id)
        db.expire_all()
        assert db.get(ScheduleSession, instance.id).day_of_week is not None

    def test_unknown_records(self, service):
        with pytest.raises(RecordNotFoundError):
            service.unschedule_session(uuid.uuid4())
        with pytest.raises(RecordNotFoundError):
            service.validate_placement(
                provider_id=PROVIDER_ID,
                school=SCHOOL,
                student_id=uuid.uuid4(),
                day_of_week=1,
                start_time=time(9, 0),
                end_time=time(9, 30),
            )

    def test_conflict_check_against_a_fingerprint(self, service, scheduled):
        fingerprint = service.current_version(PROVIDER_ID, SCHOOL)["fingerprint"]
        report, stale = service.check_conflicts(PROVIDER_ID, SCHOOL, fingerprint)
        assert not report.has_conflicts
        assert not stale
        _report, stale = service.check_conflicts(PROVIDER_ID, SCHOOL, "outdated")
        assert stale

    def test_validate_placement_excludes_the_students_own_session(self, service, scheduled):
        student, template = scheduled
        result = service.validate_placement(
            provider_id=PROVIDER_ID,
            school=SCHOOL,
            student_id=student.id,
            day_of_week=template.day_of_week,
            start_time=template.start_time,
            end_time=template.end_time,
            exclude_session_ids=[template.id],
        )
        assert result.is_valid
