from __future__ import annotations

import logging
import time as _time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, time
from enum import Enum
from typing import Any, Iterable, Sequence

from scheduling.data_manager import SchedulingDataManager
from scheduling.entities import SessionRecord, StudentInfo
from scheduling.school import SchoolIdentifier
from scheduling.timeutils import date_in_same_week, day_name, format_time, minutes_to_time, overlaps, parse_time, to_minutes


logger = logging.getLogger(__name__)


class ConstraintType(str, Enum):
    WORK_LOCATION = "work_location"
    BELL_SCHEDULE = "bell_schedule"
    SPECIAL_ACTIVITY = "special_activity"
    SCHOOL_HOURS = "school_hours"
    SESSION_OVERLAP = "session_overlap"
    CONCURRENT_SESSIONS = "concurrent_sessions"
    CAPACITY = "capacity"
    CONSECUTIVE_SESSIONS = "consecutive_sessions"
    BREAK_REQUIREMENT = "break_requirement"
    TIME_RANGE = "time_range"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Checked in this order; critical failures are never waivable.
CHECK_ORDER: tuple[ConstraintType, ...] = (
    ConstraintType.WORK_LOCATION,
    ConstraintType.BELL_SCHEDULE,
    ConstraintType.SPECIAL_ACTIVITY,
    ConstraintType.SCHOOL_HOURS,
    ConstraintType.SESSION_OVERLAP,
    ConstraintType.CONCURRENT_SESSIONS,
    ConstraintType.CAPACITY,
    ConstraintType.CONSECUTIVE_SESSIONS,
    ConstraintType.BREAK_REQUIREMENT,
)


@dataclass(frozen=True)
class ValidationRules:
    max_sessions_per_slot: int = 6
    max_sessions_per_day: int = 2
    capacity_warning_threshold: int = 3
    max_consecutive_minutes: int = 60
    min_break_minutes: int = 30


@dataclass(frozen=True)
class ConstraintViolation:
    type: ConstraintType
    message: str
    severity: Severity = Severity.ERROR
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "severity": self.severity.value,
            "details": self.details or {},
        }


@dataclass(frozen=True)
class ValidationContext:
    provider_id: uuid.UUID
    school: SchoolIdentifier | str | None
    day_of_week: int
    start_time: time
    end_time: time
    exclude_session_ids: frozenset[uuid.UUID] = frozenset()

    @classmethod
    def build(
        cls,
        provider_id: uuid.UUID,
        school: SchoolIdentifier | str | None,
        day_of_week: int,
        start_time: str | time,
        end_time: str | time,
        exclude_session_ids: Iterable[uuid.UUID] = (),
    ) -> "ValidationContext":
        return cls(
            provider_id=provider_id,
            school=school,
            day_of_week=day_of_week,
            start_time=parse_time(start_time),
            end_time=parse_time(end_time),
            exclude_session_ids=frozenset(exclude_session_ids),
        )

    @property
    def start_minutes(self) -> int:
        return to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return to_minutes(self.end_time)


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[ConstraintViolation, ...] = ()
    warnings: tuple[ConstraintViolation, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_critical(self) -> bool:
        return any(e.severity == Severity.CRITICAL for e in self.errors)

    def error_types(self) -> list[str]:
        return [e.type.value for e in self.errors]


@dataclass(frozen=True)
class BatchValidationResult:
    results: tuple[ValidationResult, ...]
    valid_count: int
    invalid_count: int
    most_common_errors: tuple[tuple[str, int], ...]


class ConstraintValidator:
    """Checks one proposed placement against every scheduling rule.

    Rule failures come back as data in a ValidationResult; nothing here raises
    for an invalid slot.
    """

    def __init__(self, data_manager: SchedulingDataManager, rules: ValidationRules | None = None) -> None:
        self.data_manager = data_manager
        self.rules = rules or ValidationRules()

    def validate(
        self,
        context: ValidationContext,
        student: StudentInfo,
        *,
        overrides: Iterable[ConstraintType | str] = (),
        slot_limit: int | None = None,
        day_limit: int | None = None,
    ) -> ValidationResult:
        started = _time.perf_counter()
        waived = {ConstraintType(o) for o in overrides}
        limit = slot_limit if slot_limit is not None else self.rules.max_sessions_per_slot
        per_day = day_limit if day_limit is not None else self.rules.max_sessions_per_day

        found: list[ConstraintViolation] = []
        warnings: list[ConstraintViolation] = []

        if context.start_minutes >= context.end_minutes:
            found.append(
                ConstraintViolation(
                    ConstraintType.TIME_RANGE,
                    "Start time must be before end time",
                    Severity.CRITICAL,
                    _range_details(context.start_minutes, context.end_minutes),
                )
            )
        else:
            student_sessions = [
                s
                for s in self.data_manager.get_sessions_by_student(student.id)
                if s.day_of_week == context.day_of_week and s.id not in context.exclude_session_ids
            ]
            found.extend(self._check_work_location(context))
            found.extend(self._check_bell_schedule(context, student))
            found.extend(self._check_special_activity(context, student))
            found.extend(self._check_school_hours(context, student))
            found.extend(self._check_session_overlap(context, student_sessions))
            found.extend(self._check_concurrent_sessions(context, limit, warnings))
            found.extend(self._check_capacity(context, student_sessions, per_day))
            found.extend(self._check_consecutive_sessions(context, student_sessions))
            found.extend(self._check_break_requirement(context, student_sessions))

        errors: list[ConstraintViolation] = []
        for violation in found:
            if violation.severity == Severity.ERROR and violation.type in waived:
                warnings.append(
                    ConstraintViolation(
                        violation.type,
                        f"Overridden: {violation.message}",
                        Severity.WARNING,
                        violation.details,
                    )
                )
            else:
                errors.append(violation)

        return ValidationResult(
            is_valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            metadata={
                "checked_constraints": [c.value for c in CHECK_ORDER],
                "execution_time_ms": round((_time.perf_counter() - started) * 1000.0, 3),
                "slot_limit": limit,
                "day_limit": per_day,
            },
        )

    def batch_validate(
        self,
        contexts: Sequence[ValidationContext],
        student: StudentInfo,
        *,
        overrides: Iterable[ConstraintType | str] = (),
        slot_limit: int | None = None,
        day_limit: int | None = None,
    ) -> BatchValidationResult:
        waived = tuple(overrides)
        results = tuple(
            self.validate(c, student, overrides=waived, slot_limit=slot_limit, day_limit=day_limit) for c in contexts
        )
        counts: Counter[str] = Counter()
        for r in results:
            # One vote per candidate per rule, so a slot with three bell overlaps counts once.
            counts.update(set(r.error_types()))
        valid = sum(1 for r in results if r.is_valid)
        return BatchValidationResult(
            results=results,
            valid_count=valid,
            invalid_count=len(results) - valid,
            most_common_errors=tuple(counts.most_common(5)),
        )

    def validate_session_move(
        self,
        session: SessionRecord,
        student: StudentInfo,
        day_of_week: int,
        start_time: str | time,
        end_time: str | time,
        *,
        school: SchoolIdentifier | str | None = None,
        overrides: Iterable[ConstraintType | str] = (),
        today: date | None = None,
    ) -> ValidationResult:
        """Validate dragging an existing session to a new slot.

        The session never conflicts with itself, and a dated instance never
        conflicts with its own template. Instances stay in their week, and
        neither the old nor the new date may be in the past.
        """

        excluded = [session.id] + ([session.template_id] if session.template_id is not None else [])
        context = ValidationContext.build(
            session.provider_id,
            school if school is not None else self.data_manager.school,
            day_of_week,
            start_time,
            end_time,
            exclude_session_ids=excluded,
        )
        result = self.validate(context, student, overrides=overrides)
        today = today or date.today()
        if session.session_date is None:
            return result
        target = date_in_same_week(session.session_date, day_of_week)
        if session.session_date < today or target < today:
            past = ConstraintViolation(
                ConstraintType.TIME_RANGE,
                "Cannot move a session into or out of the past",
                Severity.CRITICAL,
                {"session_date": session.session_date.isoformat(), "target_date": target.isoformat()},
            )
            return ValidationResult(
                is_valid=False,
                errors=(past, *result.errors),
                warnings=result.warnings,
                metadata=result.metadata,
            )
        return result

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _check_work_location(self, ctx: ValidationContext) -> list[ConstraintViolation]:
        if self.data_manager.is_provider_available(ctx.day_of_week, ctx.school):
            return []
        school = ctx.school.display_name() if isinstance(ctx.school, SchoolIdentifier) else (ctx.school or "this school")
        return [
            ConstraintViolation(
                ConstraintType.WORK_LOCATION,
                f"Provider is not scheduled to work at {school} on {day_name(ctx.day_of_week)}",
                Severity.CRITICAL,
                {"suggestion": "Choose a day the provider works at this school"},
            )
        ]

    def _check_bell_schedule(self, ctx: ValidationContext, student: StudentInfo) -> list[ConstraintViolation]:
        out = []
        for period in self.data_manager.get_bell_schedule_conflicts(
            student.grade, ctx.day_of_week, ctx.start_time, ctx.end_time
        ):
            name = period.period_name or "bell schedule period"
            out.append(
                ConstraintViolation(
                    ConstraintType.BELL_SCHEDULE,
                    f"Conflicts with {name} ({format_time(period.start_time)}-{format_time(period.end_time)})",
                    Severity.ERROR,
                    {
                        "conflicting_time": {
                            "start": format_time(period.start_time),
                            "end": format_time(period.end_time),
                        },
                        "suggestion": f"Schedule outside {name}",
                    },
                )
            )
        return out

    def _check_special_activity(self, ctx: ValidationContext, student: StudentInfo) -> list[ConstraintViolation]:
        out = []
        for activity in self.data_manager.get_special_activity_conflicts(
            student.teacher_name, ctx.day_of_week, ctx.start_time, ctx.end_time
        ):
            name = activity.activity_name or "special activity"
            out.append(
                ConstraintViolation(
                    ConstraintType.SPECIAL_ACTIVITY,
                    f"Conflicts with {name} ({format_time(activity.start_time)}-{format_time(activity.end_time)})",
                    Severity.ERROR,
                    {
                        "conflicting_time": {
                            "start": format_time(activity.start_time),
                            "end": format_time(activity.end_time),
                        },
                        "suggestion": f"Schedule outside {student.teacher_name}'s {name}",
                    },
                )
            )
        return out

    def _check_school_hours(self, ctx: ValidationContext, student: StudentInfo) -> list[ConstraintViolation]:
        hours = self.data_manager.get_school_hours(student.grade, ctx.day_of_week, ctx.start_time)
        school_start, school_end = to_minutes(hours.start_time), to_minutes(hours.end_time)
        if ctx.start_minutes >= school_start and ctx.end_minutes <= school_end:
            return []
        label = "default school hours" if hours.grade_level == "fallback" else "school hours"
        return [
            ConstraintViolation(
                ConstraintType.SCHOOL_HOURS,
                f"Session outside {label} ({format_time(hours.start_time)}-{format_time(hours.end_time)})",
                Severity.ERROR,
                {"allowed": _range_details(school_start, school_end)},
            )
        ]

    def _check_session_overlap(
        self, ctx: ValidationContext, student_sessions: list[SessionRecord]
    ) -> list[ConstraintViolation]:
        out = []
        for s in student_sessions:
            if overlaps(s.start_minutes, s.end_minutes, ctx.start_minutes, ctx.end_minutes):
                out.append(
                    ConstraintViolation(
                        ConstraintType.SESSION_OVERLAP,
                        f"Student already has a session {format_time(s.start_time)}-{format_time(s.end_time)}",
                        Severity.CRITICAL,
                        {"session_id": str(s.id), "conflicting_time": _range_details(s.start_minutes, s.end_minutes)},
                    )
                )
        return out

    def _check_concurrent_sessions(
        self, ctx: ValidationContext, limit: int, warnings: list[ConstraintViolation]
    ) -> list[ConstraintViolation]:
        count = self.data_manager.count_overlapping_sessions(
            ctx.day_of_week, ctx.start_time, ctx.end_time, exclude_ids=ctx.exclude_session_ids
        )
        if count >= limit:
            return [
                ConstraintViolation(
                    ConstraintType.CONCURRENT_SESSIONS,
                    f"Slot at capacity: {count}/{limit} concurrent sessions",
                    Severity.ERROR,
                    {"count": count, "limit": limit, "suggestion": "Find a different time slot"},
                )
            ]
        if count >= self.rules.capacity_warning_threshold:
            warnings.append(
                ConstraintViolation(
                    ConstraintType.CONCURRENT_SESSIONS,
                    f"Slot is getting full: {count}/{limit} concurrent sessions",
                    Severity.WARNING,
                    {"count": count, "limit": limit},
                )
            )
        return []

    def _check_capacity(
        self, ctx: ValidationContext, student_sessions: list[SessionRecord], limit: int
    ) -> list[ConstraintViolation]:
        if len(student_sessions) < limit:
            return []
        return [
            ConstraintViolation(
                ConstraintType.CAPACITY,
                f"Student already has {len(student_sessions)} sessions on {day_name(ctx.day_of_week)} (max {limit})",
                Severity.ERROR,
                {"count": len(student_sessions), "limit": limit, "suggestion": "Choose another day"},
            )
        ]

    def _check_consecutive_sessions(
        self, ctx: ValidationContext, student_sessions: list[SessionRecord]
    ) -> list[ConstraintViolation]:
        limit = self.rules.max_consecutive_minutes
        blocks = sorted(
            [(s.start_minutes, s.end_minutes) for s in student_sessions] + [(ctx.start_minutes, ctx.end_minutes)]
        )

        # Merge back-to-back sessions into one block and find the block holding the proposal.
        chain_start, chain_end, minutes = blocks[0][0], blocks[0][1], blocks[0][1] - blocks[0][0]
        for start, end in blocks[1:]:
            if start == chain_end:
                chain_end = end
                minutes += end - start
                continue
            if chain_start <= ctx.start_minutes < chain_end:
                break
            chain_start, chain_end, minutes = start, end, end - start

        if not (chain_start <= ctx.start_minutes < chain_end) or minutes <= limit:
            return []
        return [
            ConstraintViolation(
                ConstraintType.CONSECUTIVE_SESSIONS,
                f"Student would have {minutes} consecutive minutes of sessions (max {limit})",
                Severity.ERROR,
                {
                    "conflicting_time": _range_details(chain_start, chain_end),
                    "suggestion": "Add a break between sessions",
                },
            )
        ]

    def _check_break_requirement(
        self, ctx: ValidationContext, student_sessions: list[SessionRecord]
    ) -> list[ConstraintViolation]:
        min_break = self.rules.min_break_minutes
        out = []
        for s in student_sessions:
            if s.end_minutes <= ctx.start_minutes:
                gap, gap_start, gap_end = ctx.start_minutes - s.end_minutes, s.end_minutes, ctx.start_minutes
            elif ctx.end_minutes <= s.start_minutes:
                gap, gap_start, gap_end = s.start_minutes - ctx.end_minutes, ctx.end_minutes, s.start_minutes
            else:
                continue
            # gap == 0 is a consecutive block, handled by the consecutive check.
            if 0 < gap < min_break:
                out.append(
                    ConstraintViolation(
                        ConstraintType.BREAK_REQUIREMENT,
                        f"Only {gap} minutes between sessions (min {min_break})",
                        Severity.ERROR,
                        {
                            "conflicting_time": _range_details(gap_start, gap_end),
                            "suggestion": f"Increase gap to at least {min_break} minutes",
                        },
                    )
                )
        return out


def _range_details(start: int, end: int) -> dict[str, str]:
    def fmt(m: int) -> str:
        return format_time(minutes_to_time(m)) if 0 <= m < 24 * 60 else str(m)

    return {"start": fmt(start), "end": fmt(end)}
