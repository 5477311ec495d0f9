"""Tests for the constraint validator."""

import uuid
from dataclasses import replace
from datetime import date

import pytest

from scheduling.entities import SpecialActivityInfo, WorkDay
from scheduling.school import SchoolIdentifier
from scheduling.timeutils import parse_time
from scheduling.validator import (
    CHECK_ORDER,
    ConstraintType,
    ConstraintValidator,
    Severity,
    ValidationContext,
    ValidationRules,
)
from fakes import PROVIDER_ID, SCHOOL, bell, make_session, make_student


def ctx(day, start, end, exclude=()):
    return ValidationContext.build(PROVIDER_ID, SCHOOL, day, start, end, exclude_session_ids=exclude)


@pytest.fixture
def student():
    return make_student("RM", grade="3", teacher="Ms. Rivera")


@pytest.fixture
def validator_for(build_manager):
    def _build(rules=None):
        return ConstraintValidator(build_manager(), rules)

    return _build


class TestBellSchedule:
    @pytest.fixture
    def validator(self, repo, validator_for):
        repo.bell_periods.extend(
            [
                bell("3", 2, "10:00", "10:15", "Recess"),
                bell("3", 4, "10:00", "10:15", "Recess"),
            ]
        )
        return validator_for()

    def test_recess_blocks_overlapping_session(self, validator, student):
        result = validator.validate(ctx(2, "10:00", "10:30"), student)
        assert not result.is_valid
        assert result.error_types() == ["bell_schedule"]
        error = result.errors[0]
        assert error.severity == Severity.ERROR
        assert "Recess" in error.message
        assert error.details["conflicting_time"] == {"start": "10:00", "end": "10:15"}

    def test_recess_still_blocks_after_cache_is_cleared(self, validator, student):
        validator.data_manager.clear_cache()
        result = validator.validate(ctx(2, "10:00", "10:30"), student)
        assert result.error_types() == ["bell_schedule"]

    def test_other_days_are_free(self, validator, student):
        assert validator.validate(ctx(1, "10:00", "10:30"), student).is_valid

    def test_session_starting_when_recess_ends_is_valid(self, validator, student):
        assert validator.validate(ctx(4, "10:15", "10:45"), student).is_valid

    def test_override_turns_the_error_into_a_warning(self, validator, student):
        result = validator.validate(ctx(2, "10:00", "10:30"), student, overrides=[ConstraintType.BELL_SCHEDULE])
        assert result.is_valid
        assert [w.type for w in result.warnings] == [ConstraintType.BELL_SCHEDULE]
        assert result.warnings[0].message.startswith("Overridden:")

    def test_override_accepts_plain_names(self, validator, student):
        assert validator.validate(ctx(2, "10:00", "10:30"), student, overrides=["bell_schedule"]).is_valid

    def test_batch_summarizes_most_common_errors(self, validator, student):
        contexts = [ctx(day, "10:00", "10:30") for day in (1, 2, 3, 4, 5)]
        summary = validator.batch_validate(contexts, student)
        assert summary.valid_count == 3
        assert summary.invalid_count == 2
        assert summary.most_common_errors == (("bell_schedule", 2),)
        assert [r.is_valid for r in summary.results] == [True, False, True, False, True]


class TestPlacementRules:
    def test_inverted_time_range_is_critical(self, validator_for, student):
        result = validator_for().validate(ctx(1, "10:30", "10:00"), student)
        assert result.error_types() == ["time_range"]
        assert result.has_critical

    def test_outside_default_school_hours(self, validator_for, student):
        result = validator_for().validate(ctx(1, "07:30", "08:00"), student)
        assert result.error_types() == ["school_hours"]
        assert "default school hours" in result.errors[0].message

    def test_provider_not_at_this_school_is_critical(self, repo, validator_for, student):
        repo.work_days.extend([WorkDay(1, SCHOOL), WorkDay(3, SchoolIdentifier(school_site="Jefferson Middle"))])
        validator = validator_for()
        result = validator.validate(ctx(3, "10:00", "10:30"), student, overrides=["work_location"])
        assert not result.is_valid
        assert result.errors[0].type == ConstraintType.WORK_LOCATION
        assert result.errors[0].severity == Severity.CRITICAL
        assert validator.validate(ctx(1, "10:00", "10:30"), student).is_valid

    def test_special_activity_for_the_students_teacher(self, repo, validator_for, student):
        repo.activities.append(SpecialActivityInfo("Ms. Rivera", 1, parse_time("13:00"), parse_time("13:45"), "Library"))
        validator = validator_for()
        result = validator.validate(ctx(1, "13:30", "14:00"), student)
        assert result.error_types() == ["special_activity"]
        other_class = replace(student, teacher_name="Mr. Okafor")
        assert validator.validate(ctx(1, "13:30", "14:00"), other_class).is_valid

    def test_student_double_booking_is_critical_and_not_waivable(self, repo, validator_for, student):
        repo.sessions.append(make_session(student.id, 1, "09:00", "09:30"))
        result = validator_for().validate(ctx(1, "09:15", "09:45"), student, overrides=["session_overlap"])
        assert not result.is_valid
        assert ConstraintType.SESSION_OVERLAP in [e.type for e in result.errors]
        assert result.has_critical


class TestConcurrency:
    def _fill(self, repo, count):
        for _ in range(count):
            repo.sessions.append(make_session(uuid.uuid4(), 1, "09:00", "09:30"))

    def test_full_slot_is_rejected(self, repo, validator_for, student):
        self._fill(repo, 6)
        result = validator_for().validate(ctx(1, "09:00", "09:30"), student)
        assert result.error_types() == ["concurrent_sessions"]
        assert result.errors[0].details["count"] == 6

    def test_busy_slot_warns(self, repo, validator_for, student):
        self._fill(repo, 3)
        result = validator_for().validate(ctx(1, "09:15", "09:45"), student)
        assert result.is_valid
        assert [w.type for w in result.warnings] == [ConstraintType.CONCURRENT_SESSIONS]

    def test_slot_limit_overrides_the_rule(self, repo, validator_for, student):
        self._fill(repo, 3)
        result = validator_for().validate(ctx(1, "09:00", "09:30"), student, slot_limit=3)
        assert not result.is_valid
        assert result.metadata["slot_limit"] == 3


class TestDailyLoad:
    def test_third_session_on_a_day_exceeds_capacity(self, repo, validator_for, student):
        repo.sessions.extend(
            [
                make_session(student.id, 1, "09:00", "09:30"),
                make_session(student.id, 1, "11:00", "11:30"),
            ]
        )
        result = validator_for().validate(ctx(1, "13:00", "13:30"), student)
        assert result.error_types() == ["capacity"]

    def test_day_limit_argument_overrides_the_rules(self, repo, validator_for, student):
        repo.sessions.append(make_session(student.id, 1, "09:00", "09:30"))
        validator = validator_for()
        assert validator.validate(ctx(1, "13:00", "13:30"), student).is_valid

        result = validator.validate(ctx(1, "13:00", "13:30"), student, day_limit=1)
        assert result.error_types() == ["capacity"]
        assert result.metadata["day_limit"] == 1

    def test_back_to_back_sessions_over_an_hour(self, repo, validator_for, student):
        repo.sessions.extend(
            [
                make_session(student.id, 1, "09:00", "09:30"),
                make_session(student.id, 1, "09:30", "10:00"),
            ]
        )
        validator = validator_for(ValidationRules(max_sessions_per_day=3))
        result = validator.validate(ctx(1, "10:00", "10:30"), student)
        assert result.error_types() == ["consecutive_sessions"]
        assert "90 consecutive minutes" in result.errors[0].message

    def test_one_hour_block_is_allowed(self, repo, validator_for, student):
        repo.sessions.append(make_session(student.id, 1, "09:00", "09:30"))
        assert validator_for().validate(ctx(1, "09:30", "10:00"), student).is_valid

    def test_short_gap_breaks_the_break_rule(self, repo, validator_for, student):
        repo.sessions.append(make_session(student.id, 1, "09:00", "09:30"))
        validator = validator_for()
        result = validator.validate(ctx(1, "09:45", "10:15"), student)
        assert result.error_types() == ["break_requirement"]
        assert validator.validate(ctx(1, "10:00", "10:30"), student).is_valid

    def test_result_metadata(self, validator_for, student):
        result = validator_for().validate(ctx(1, "10:00", "10:30"), student)
        assert result.metadata["checked_constraints"] == [c.value for c in CHECK_ORDER]
        assert result.metadata["execution_time_ms"] >= 0


class TestSessionMove:
    def test_session_does_not_conflict_with_itself(self, repo, validator_for, student):
        session = make_session(student.id, 1, "09:00", "09:30")
        repo.sessions.append(session)
        result = validator_for().validate_session_move(session, student, 1, "09:15", "09:45")
        assert result.is_valid

    def test_past_instances_cannot_move(self, validator_for, student):
        session = make_session(student.id, 1, "09:00", "09:30", session_date=date(2026, 1, 5))
        result = validator_for().validate_session_move(
            session, student, 2, "09:00", "09:30", today=date(2026, 2, 1)
        )
        assert not result.is_valid
        assert result.errors[0].type == ConstraintType.TIME_RANGE
        assert "past" in result.errors[0].message

    def test_instance_does_not_conflict_with_its_template(self, repo, validator_for, student):
        template = make_session(student.id, 1, "09:00", "09:30")
        repo.sessions.append(template)
        instance = replace(
            make_session(student.id, 1, "09:00", "09:30", session_date=date(2026, 3, 2)), template_id=template.id
        )
        result = validator_for().validate_session_move(
            instance, student, 1, "09:15", "09:45", today=date(2026, 3, 1)
        )
        assert result.is_valid

    def test_instance_cannot_move_to_an_earlier_day_that_has_passed(self, validator_for, student):
        # Wednesday 2026-03-04 moved back to Monday 2026-03-02, seen from Tuesday.
        session = make_session(student.id, 3, "09:00", "09:30", session_date=date(2026, 3, 4))
        result = validator_for().validate_session_move(
            session, student, 1, "09:00", "09:30", today=date(2026, 3, 3)
        )
        assert not result.is_valid
        assert result.errors[0].details["target_date"] == "2026-03-02"

    def test_move_onto_a_recess_is_flagged(self, repo, validator_for, student):
        repo.bell_periods.append(bell("3", 2, "10:00", "10:15", "Recess"))
        session = make_session(student.id, 1, "09:00", "09:30")
        repo.sessions.append(session)
        result = validator_for().validate_session_move(session, student, 2, "10:00", "10:30")
        assert result.error_types() == ["bell_schedule"]
