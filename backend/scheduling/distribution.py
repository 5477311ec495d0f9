from __future__ import annotations

import logging
import math
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Sequence

from scheduling.data_manager import SchedulingDataManager
from scheduling.entities import SessionRecord, StudentInfo
from scheduling.school import SchoolIdentifier
from scheduling.timeutils import WEEKDAYS, minutes_to_time, to_minutes
from scheduling.validator import ConstraintValidator, ValidationContext


logger = logging.getLogger(__name__)

GRADE_ORDER = ["TK", "K", "1", "2", "3", "4", "5"]
NOON_MINUTES = 12 * 60


class DistributionStrategy(str, Enum):
    TWO_PASS = "two-pass"
    GRADE_GROUPED = "grade-grouped"
    EVEN = "even"
    SPREAD = "spread"
    COMPACT = "compact"


@dataclass(frozen=True)
class ScoringWeights:
    capacity: float
    grade_alignment: float
    time_preference: float
    distribution: float


STRATEGY_WEIGHTS: dict[DistributionStrategy, ScoringWeights] = {
    DistributionStrategy.TWO_PASS: ScoringWeights(capacity=0.3, grade_alignment=0.3, time_preference=0.1, distribution=0.3),
    DistributionStrategy.GRADE_GROUPED: ScoringWeights(
        capacity=0.3, grade_alignment=0.4, time_preference=0.3, distribution=0.2
    ),
    DistributionStrategy.EVEN: ScoringWeights(capacity=0.3, grade_alignment=0.0, time_preference=0.1, distribution=0.6),
    DistributionStrategy.SPREAD: ScoringWeights(capacity=0.2, grade_alignment=0.0, time_preference=0.1, distribution=0.7),
    DistributionStrategy.COMPACT: ScoringWeights(
        capacity=0.2, grade_alignment=0.2, time_preference=0.1, distribution=0.5
    ),
}


@dataclass(frozen=True)
class DistributionConfig:
    strategy: DistributionStrategy = DistributionStrategy.TWO_PASS
    max_sessions_per_slot: int = 6
    max_sessions_per_day: int = 2
    prefer_morning: bool = False
    prefer_afternoon: bool = False
    grade_grouping_enabled: bool = True
    two_pass_enabled: bool = True
    first_pass_limit: int = 3
    second_pass_limit: int = 6
    slot_interval_minutes: int = 5
    weights: ScoringWeights | None = None
    service_type: str = "resource"
    delivered_by: str = "provider"

    def scoring_weights(self) -> ScoringWeights:
        weights = self.weights or STRATEGY_WEIGHTS[self.strategy]
        if not self.grade_grouping_enabled:
            weights = replace(weights, grade_alignment=0.0)
        return weights

    def passes(self) -> list[tuple[int, int]]:
        """(pass number, slot limit) in the order they run."""

        if self.strategy == DistributionStrategy.TWO_PASS and self.two_pass_enabled:
            second = min(self.second_pass_limit, self.max_sessions_per_slot)
            first = min(self.first_pass_limit, second)
            return [(1, first), (2, second)]
        return [(1, self.max_sessions_per_slot)]


@dataclass(frozen=True)
class DistributionContext:
    provider_id: uuid.UUID
    school: SchoolIdentifier


@dataclass(frozen=True)
class SlotScore:
    day_of_week: int
    start_minutes: int
    end_minutes: int
    score: float
    factors: dict[str, float]

    def sort_key(self) -> tuple[float, int, int]:
        # Highest score first; ties go to the earliest day, then the earliest start.
        return (-round(self.score, 9), self.day_of_week, self.start_minutes)


@dataclass(frozen=True)
class UnscheduledSession:
    student_id: uuid.UUID
    count: int
    reason: str
    most_common_errors: tuple[tuple[str, int], ...] = ()


@dataclass(frozen=True)
class DistributionMetrics:
    """Load of the provider's whole week after placement, not a per-student score."""

    average_sessions_per_day: float
    max_sessions_per_day: int
    grade_grouping_score: float
    distribution_balance: float


@dataclass(frozen=True)
class DistributionResult:
    student_id: uuid.UUID
    strategy: DistributionStrategy
    placements: tuple[SessionRecord, ...]
    unscheduled: tuple[UnscheduledSession, ...]
    metrics: DistributionMetrics
    pass_counts: dict[int, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.unscheduled


class DistributionEngine:
    """Places a student's weekly sessions into the best valid slots.

    Every accepted placement is registered with the data manager straight away
    so the next session (and the next student) sees it.
    """

    def __init__(self, data_manager: SchedulingDataManager, validator: ConstraintValidator) -> None:
        self.data_manager = data_manager
        self.validator = validator

    def distribute(
        self,
        student: StudentInfo,
        config: DistributionConfig,
        context: DistributionContext,
        *,
        sessions_needed: int | None = None,
    ) -> DistributionResult:
        needed = None if sessions_needed is None else {student.id: sessions_needed}
        return self.distribute_many([student], config, context, sessions_needed=needed)[0]

    def distribute_many(
        self,
        students: Iterable[StudentInfo],
        config: DistributionConfig,
        context: DistributionContext,
        *,
        sessions_needed: dict[uuid.UUID, int] | None = None,
    ) -> list[DistributionResult]:
        """Distribute a caseload, hardest students first.

        Each pass runs over every student before the next pass starts, so no
        slot goes past the first-pass limit while another student could still
        be placed under it.
        """

        ordered = order_students_for_scheduling(students)
        overrides = sessions_needed or {}
        needed = {s.id: overrides.get(s.id, s.sessions_per_week) for s in ordered}
        placements: dict[uuid.UUID, list[SessionRecord]] = {s.id: [] for s in ordered}
        pass_counts: dict[uuid.UUID, dict[int, int]] = {s.id: {} for s in ordered}
        weights = config.scoring_weights()

        for pass_number, limit in config.passes():
            # The second pass only fills slots; spreading was the first pass's job.
            pass_weights = replace(weights, distribution=0.0) if pass_number == 2 else weights
            for student in ordered:
                placed = 0
                while len(placements[student.id]) < needed[student.id]:
                    session = self._place_one(
                        student, config, context, student.minutes_per_session, limit, pass_weights
                    )
                    if session is None:
                        break
                    placements[student.id].append(session)
                    placed += 1
                pass_counts[student.id][pass_number] = placed

        metrics = self.compute_metrics(context.school)
        results: list[DistributionResult] = []
        for student in ordered:
            unscheduled: list[UnscheduledSession] = []
            remaining = needed[student.id] - len(placements[student.id])
            if remaining > 0:
                unscheduled.append(
                    self._explain_unscheduled(student, config, context, student.minutes_per_session, remaining)
                )
                logger.info(
                    "Could not place %d of %d sessions for student_id=%s: %s",
                    remaining,
                    needed[student.id],
                    student.id,
                    unscheduled[0].reason,
                )
            results.append(
                DistributionResult(
                    student_id=student.id,
                    strategy=config.strategy,
                    placements=tuple(placements[student.id]),
                    unscheduled=tuple(unscheduled),
                    metrics=metrics,
                    pass_counts=pass_counts[student.id],
                )
            )
        return results

    # ------------------------------------------------------------------
    # Candidates + scoring
    # ------------------------------------------------------------------

    def candidate_slots(
        self,
        student: StudentInfo,
        context: DistributionContext,
        duration: int,
        slot_interval: int,
        *,
        limit: int | None = None,
        prefilter: bool = True,
    ) -> list[tuple[int, int, int]]:
        dm = self.data_manager
        days = [d for d in dm.get_provider_work_days(context.school) if d in WEEKDAYS]
        out: list[tuple[int, int, int]] = []
        for day in days:
            hours = dm.get_school_hours(student.grade, day)
            start = to_minutes(hours.start_time)
            last_start = to_minutes(hours.end_time) - duration
            while start <= last_start:
                end = start + duration
                if not prefilter or dm.is_slot_available(
                    day, minutes_to_time(start), minutes_to_time(end), context.school, limit=limit
                ):
                    out.append((day, start, end))
                start += slot_interval
        return out

    def score_slot(
        self,
        student: StudentInfo,
        config: DistributionConfig,
        day: int,
        start: int,
        end: int,
        limit: int,
        weights: ScoringWeights,
        student_days: Counter[int],
        day_loads: dict[int, int],
    ) -> SlotScore:
        dm = self.data_manager
        neighbours = dm.get_existing_sessions(day, (minutes_to_time(start), minutes_to_time(end)))

        capacity = max(0.0, 1.0 - len(neighbours) / limit) if limit else 0.0
        grade = _grade_alignment(student.grade, [s.grade_level for s in neighbours])

        if config.prefer_morning and not config.prefer_afternoon:
            time_pref = 1.0 if end <= NOON_MINUTES else 0.0
        elif config.prefer_afternoon and not config.prefer_morning:
            time_pref = 1.0 if start >= NOON_MINUTES else 0.0
        else:
            time_pref = 0.5

        distribution = _distribution_factor(config.strategy, day, student_days, day_loads)

        factors = {
            "capacity": round(capacity, 4),
            "grade_alignment": round(grade, 4),
            "time_preference": round(time_pref, 4),
            "distribution": round(distribution, 4),
        }
        score = (
            weights.capacity * capacity
            + weights.grade_alignment * grade
            + weights.time_preference * time_pref
            + weights.distribution * distribution
        )
        return SlotScore(day_of_week=day, start_minutes=start, end_minutes=end, score=score, factors=factors)

    def _place_one(
        self,
        student: StudentInfo,
        config: DistributionConfig,
        context: DistributionContext,
        duration: int,
        limit: int,
        weights: ScoringWeights,
    ) -> SessionRecord | None:
        dm = self.data_manager
        candidates = self.candidate_slots(student, context, duration, config.slot_interval_minutes, limit=limit)
        if not candidates:
            return None

        student_days = Counter(s.day_of_week for s in dm.get_sessions_by_student(student.id))
        day_loads = {day: len(dm.get_existing_sessions(day)) for day in {c[0] for c in candidates}}
        scored = [
            self.score_slot(student, config, day, start, end, limit, weights, student_days, day_loads)
            for day, start, end in candidates
        ]
        scored.sort(key=SlotScore.sort_key)

        # Validate lazily: the best-scoring candidate that passes wins.
        for slot in scored:
            ctx = ValidationContext.build(
                context.provider_id,
                context.school,
                slot.day_of_week,
                minutes_to_time(slot.start_minutes),
                minutes_to_time(slot.end_minutes),
            )
            if not self.validator.validate(
                ctx, student, slot_limit=limit, day_limit=config.max_sessions_per_day
            ).is_valid:
                continue
            session = SessionRecord(
                id=uuid.uuid4(),
                student_id=student.id,
                provider_id=context.provider_id,
                day_of_week=slot.day_of_week,
                start_time=minutes_to_time(slot.start_minutes),
                end_time=minutes_to_time(slot.end_minutes),
                service_type=config.service_type,
                delivered_by=config.delivered_by,
                is_template=True,
                grade_level=student.grade,
            )
            dm.register_sessions([session])
            logger.debug(
                "Placed student_id=%s day=%s %s-%s score=%.3f factors=%s",
                student.id,
                slot.day_of_week,
                session.start_time,
                session.end_time,
                slot.score,
                slot.factors,
            )
            return session
        return None

    def _explain_unscheduled(
        self,
        student: StudentInfo,
        config: DistributionConfig,
        context: DistributionContext,
        duration: int,
        remaining: int,
    ) -> UnscheduledSession:
        limit = config.passes()[-1][1]
        grid = self.candidate_slots(student, context, duration, config.slot_interval_minutes, prefilter=False)
        if not grid:
            return UnscheduledSession(
                student_id=student.id,
                count=remaining,
                reason="No candidate slots: provider has no work days at this school or the school day is too short",
            )
        contexts = [
            ValidationContext.build(
                context.provider_id, context.school, day, minutes_to_time(start), minutes_to_time(end)
            )
            for day, start, end in grid
        ]
        summary = self.validator.batch_validate(
            contexts, student, slot_limit=limit, day_limit=config.max_sessions_per_day
        )
        if summary.most_common_errors:
            top = ", ".join(f"{name} ({count})" for name, count in summary.most_common_errors[:3])
            reason = f"No valid slot remaining; most common conflicts: {top}"
        else:
            reason = "No valid slot remaining"
        return UnscheduledSession(
            student_id=student.id,
            count=remaining,
            reason=reason,
            most_common_errors=summary.most_common_errors,
        )

    # ------------------------------------------------------------------
    # Metrics + strategy selection
    # ------------------------------------------------------------------

    def compute_metrics(self, school: SchoolIdentifier | None = None) -> DistributionMetrics:
        """Summarize every cached session for the provider at this school.

        Students placed in the same batch therefore share identical metrics.
        """

        dm = self.data_manager
        days = [d for d in dm.get_provider_work_days(school) if d in WEEKDAYS] or list(WEEKDAYS)
        per_day = {day: len(dm.get_existing_sessions(day)) for day in days}
        total = sum(per_day.values())
        max_count = max(per_day.values()) if per_day else 0
        average = total / len(days) if days else 0.0

        balance = 1.0
        if max_count:
            balance = min(1.0, math.ceil(total / len(days)) / max_count)

        same = pairs = 0
        for day in days:
            by_slot: dict[tuple[int, int], list[str | None]] = defaultdict(list)
            for s in dm.get_existing_sessions(day):
                by_slot[(s.start_minutes, s.end_minutes)].append((s.grade_level or "").upper() or None)
            for grades in by_slot.values():
                for i, a in enumerate(grades):
                    for b in grades[i + 1 :]:
                        pairs += 1
                        same += 1 if a is not None and a == b else 0
        grouping = same / pairs if pairs else 1.0

        return DistributionMetrics(
            average_sessions_per_day=round(average, 3),
            max_sessions_per_day=max_count,
            grade_grouping_score=round(grouping, 3),
            distribution_balance=round(balance, 3),
        )

    def recommend_strategy(
        self,
        student: StudentInfo,
        candidates: Sequence[tuple[int, int, int]],
        config: DistributionConfig | None = None,
    ) -> DistributionStrategy:
        """Pick a strategy from the student's load and how many slots are open."""

        config = config or DistributionConfig()
        if student.sessions_per_week > 3 or student.total_minutes > 120:
            return DistributionStrategy.TWO_PASS
        if config.grade_grouping_enabled:
            return DistributionStrategy.GRADE_GROUPED
        days = {c[0] for c in candidates}
        if not days or len(candidates) / len(days) < 5:
            return DistributionStrategy.EVEN
        return DistributionStrategy.SPREAD


def order_students_for_scheduling(students: Iterable[StudentInfo]) -> list[StudentInfo]:
    """Hardest students first: most total minutes, then most sessions."""

    return sorted(students, key=lambda s: (-s.total_minutes, -s.sessions_per_week, s.initials, str(s.id)))


def _grade_index(grade: str | None) -> int | None:
    if not grade:
        return None
    g = grade.strip().upper()
    return GRADE_ORDER.index(g) if g in GRADE_ORDER else None


def _grade_alignment(grade: str, others: list[str | None]) -> float:
    if not others:
        return 0.5
    target = _grade_index(grade)
    points = 0
    for other in others:
        if other and other.strip().upper() == grade:
            points += 2
            continue
        idx = _grade_index(other)
        if target is not None and idx is not None and abs(target - idx) == 1:
            points += 1
    return points / (2 * len(others))


def _distribution_factor(
    strategy: DistributionStrategy, day: int, student_days: Counter[int], day_loads: dict[int, int]
) -> float:
    if strategy == DistributionStrategy.SPREAD:
        if not student_days:
            return 1.0
        gap = min(abs(day - d) for d in student_days)
        return min(1.0, gap / (len(WEEKDAYS) - 1))
    if strategy == DistributionStrategy.COMPACT:
        if not student_days:
            return 1.0
        days = set(student_days) | {day}
        return 1.0 - (max(days) - min(days)) / (len(WEEKDAYS) - 1)

    clustering = 1.0 / (1 + student_days.get(day, 0))
    busiest = max(day_loads.values()) if day_loads else 0
    lightness = 1.0 - (day_loads.get(day, 0) / busiest) if busiest else 1.0
    return 0.8 * clustering + 0.2 * lightness


def describe_result(result: DistributionResult) -> dict[str, Any]:
    return {
        "student_id": str(result.student_id),
        "strategy": result.strategy.value,
        "placed": len(result.placements),
        "unscheduled": sum(u.count for u in result.unscheduled),
        "pass_counts": dict(result.pass_counts),
    }
