from __future__ import annotations

import hashlib
import logging
import time as _time
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Protocol, TypeVar

from scheduling.entities import (
    BellPeriod,
    SchedulingSnapshot,
    SchoolHoursInfo,
    SessionRecord,
    SpecialActivityInfo,
    WorkDay,
)
from scheduling.errors import DataFetchError, InitializationError
from scheduling.school import SchoolIdentifier
from scheduling.timeutils import WEEKDAYS, overlaps, parse_time, to_minutes


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SCHOOL_START = time(8, 0)
DEFAULT_SCHOOL_END = time(15, 0)
_KINDERGARTEN_GRADES = {"K", "TK"}
_KINDERGARTEN_VARIANTS = {"K", "TK", "K-AM", "K-PM", "TK-AM", "TK-PM"}


class ManagerState(str, Enum):
    CREATED = "CREATED"
    READY = "READY"
    STALE = "STALE"
    DISPOSED = "DISPOSED"


class SchedulingRepository(Protocol):
    """Read access to every constraint source for one provider at one school."""

    def fetch_provider_work_schedule(self, provider_id: uuid.UUID) -> list[WorkDay]: ...

    def fetch_bell_schedules(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> list[BellPeriod]: ...

    def fetch_special_activities(
        self, provider_id: uuid.UUID, school: SchoolIdentifier
    ) -> list[SpecialActivityInfo]: ...

    def fetch_school_hours(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> list[SchoolHoursInfo]: ...

    def fetch_sessions(
        self, provider_id: uuid.UUID, school: SchoolIdentifier, provider_role: str | None = None
    ) -> list[SessionRecord]: ...


@dataclass(frozen=True)
class DataManagerConfig:
    max_cache_age_seconds: float = 15 * 60
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    max_sessions_per_slot: int = 6


@dataclass(frozen=True)
class SessionChange:
    kind: str  # added | removed | moved
    session_id: uuid.UUID
    detail: str


@dataclass(frozen=True)
class ConflictReport:
    has_conflicts: bool
    version: int
    cached_fingerprint: str
    persisted_fingerprint: str
    concurrent_changes: tuple[SessionChange, ...] = ()
    conflicts: tuple[dict[str, Any], ...] = ()


def sessions_fingerprint(sessions: Iterable[SessionRecord]) -> str:
    """Stable digest of the scheduled placement of every session."""

    h = hashlib.sha1()
    for key in sorted(_placement(s) for s in sessions):
        h.update(repr(key).encode("utf-8"))
    return h.hexdigest()


def _placement(s: SessionRecord) -> tuple[str, int | None, str | None, str | None]:
    return (
        str(s.id),
        s.day_of_week,
        s.start_time.isoformat() if s.start_time else None,
        s.end_time.isoformat() if s.end_time else None,
    )


class SchedulingDataManager:
    """Caller-owned cache of every scheduling constraint for one provider at one school.

    Lifecycle: CREATED -> initialize() -> READY; clear_cache() or a failed
    refresh() moves it to STALE; dispose() ends it. Reads are served from the
    in-memory indexes; the first read after clear_cache() reloads them.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        config: DataManagerConfig | None = None,
        *,
        sleep: Callable[[float], None] = _time.sleep,
        clock: Callable[[], float] = _time.monotonic,
    ) -> None:
        self._repository = repository
        self.config = config or DataManagerConfig()
        self._sleep = sleep
        self._clock = clock

        self.state = ManagerState.CREATED
        self.provider_id: uuid.UUID | None = None
        self.provider_role: str | None = None
        self.school: SchoolIdentifier | None = None
        self._version = 0
        self._loaded_at: float | None = None
        self.metadata: dict[str, Any] = {}
        self._metrics = {"cache_hits": 0, "cache_misses": 0, "query_count": 0, "fetch_time_ms": 0.0}
        self._reset_indexes()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        provider_id: uuid.UUID | None,
        school_site: str | None,
        school_id: str | None = None,
        *,
        school_district: str | None = None,
        provider_role: str | None = None,
    ) -> None:
        if self.state == ManagerState.DISPOSED:
            raise InitializationError("Data manager has been disposed")
        if provider_id is None:
            raise InitializationError("provider_id is required")
        school = SchoolIdentifier(school_site=school_site, school_district=school_district, school_id=school_id)
        if school.is_empty():
            raise InitializationError("school_site or school_id is required")

        self.provider_id = provider_id
        self.provider_role = provider_role
        self.school = school
        self._load_all()
        logger.info(
            "Scheduling data loaded provider_id=%s school=%s sessions=%d version=%d",
            provider_id,
            school.key(),
            len(self._sessions),
            self._version,
        )

    def refresh(self) -> None:
        self._require_scope()
        self._load_all()

    def clear_cache(self) -> None:
        self._require_scope()
        self._reset_indexes()
        self._loaded_at = None
        self.state = ManagerState.STALE

    def dispose(self) -> None:
        self._reset_indexes()
        self.state = ManagerState.DISPOSED

    @property
    def is_stale(self) -> bool:
        return self.state == ManagerState.STALE or "last_fetch_error" in self.metadata

    def is_initialized_for(self, provider_id: uuid.UUID, school: SchoolIdentifier) -> bool:
        return (
            self.state == ManagerState.READY
            and self.provider_id == provider_id
            and self.school is not None
            and self.school.is_same_school(school)
        )

    def is_cache_stale(self) -> bool:
        if self.state != ManagerState.READY or self._loaded_at is None:
            return True
        return (self._clock() - self._loaded_at) > self.config.max_cache_age_seconds

    def get_version(self) -> int:
        return self._version

    def get_metrics(self) -> dict[str, Any]:
        count = self._metrics["query_count"]
        fetches = self._metrics["cache_misses"]
        return {
            "cache_hits": self._metrics["cache_hits"],
            "cache_misses": self._metrics["cache_misses"],
            "query_count": count,
            "average_fetch_time_ms": (self._metrics["fetch_time_ms"] / fetches) if fetches else 0.0,
            "total_sessions": len(self._sessions),
            "version": self._version,
            "state": self.state.value,
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _reset_indexes(self) -> None:
        self._work_days: list[WorkDay] = []
        self._bell_by_grade: dict[str, dict[int, list[BellPeriod]]] = defaultdict(lambda: defaultdict(list))
        self._activities_by_teacher: dict[str, dict[int, list[SpecialActivityInfo]]] = defaultdict(
            lambda: defaultdict(list)
        )
        self._hours: dict[tuple[str, int], SchoolHoursInfo] = {}
        self._sessions: dict[uuid.UUID, SessionRecord] = {}
        self._sessions_by_day: dict[int, list[SessionRecord]] = defaultdict(list)
        self._persisted: dict[uuid.UUID, SessionRecord] = {}
        self._loaded_fingerprint = sessions_fingerprint(())

    def _require_scope(self) -> None:
        if self.state == ManagerState.DISPOSED:
            raise InitializationError("Data manager has been disposed")
        if self.provider_id is None or self.school is None:
            raise InitializationError("Data manager is not initialized; call initialize() first")

    def _require_loaded(self) -> None:
        self._require_scope()
        if self.state == ManagerState.CREATED:
            raise InitializationError("Data manager is not initialized; call initialize() first")
        if self._loaded_at is None:
            # Cleared cache: reload before answering; a failed reload raises DataFetchError.
            logger.info("Reloading cleared scheduling cache provider_id=%s", self.provider_id)
            self._load_all()

    def _fetch(self, source: str, loader: Callable[[], T]) -> T:
        attempts = max(1, self.config.retry_attempts)
        last_exc: Exception | None = None
        for attempt in range(attempts):
            started = self._clock()
            try:
                result = loader()
            except Exception as exc:
                last_exc = exc
                logger.warning("Fetching %s failed (attempt %d/%d): %s", source, attempt + 1, attempts, exc)
                if attempt + 1 < attempts:
                    self._sleep(self.config.retry_delay_seconds * (2**attempt))
                continue
            self._metrics["cache_misses"] += 1
            self._metrics["fetch_time_ms"] += (self._clock() - started) * 1000.0
            return result

        if self.state == ManagerState.READY:
            self.state = ManagerState.STALE
        self.metadata["last_fetch_error"] = {"source": source, "message": str(last_exc)}
        raise DataFetchError(source, f"failed after {attempts} attempts: {last_exc}") from last_exc

    def _load_all(self) -> None:
        provider_id, school = self.provider_id, self.school
        repo = self._repository

        # Fetch everything before touching the indexes so a failure leaves the old view intact.
        work_days = self._fetch("work_schedule", lambda: repo.fetch_provider_work_schedule(provider_id))
        bells = self._fetch("bell_schedules", lambda: repo.fetch_bell_schedules(provider_id, school))
        activities = self._fetch("special_activities", lambda: repo.fetch_special_activities(provider_id, school))
        hours = self._fetch("school_hours", lambda: repo.fetch_school_hours(provider_id, school))
        sessions = self._fetch("sessions", lambda: repo.fetch_sessions(provider_id, school, self.provider_role))

        self._reset_indexes()
        self._work_days = list(work_days)
        for period in bells:
            for grade in period.grade_levels:
                self._bell_by_grade[grade][period.day_of_week].append(period)
        for activity in activities:
            if activity.deleted_at is not None:
                continue
            self._activities_by_teacher[_teacher_key(activity.teacher_name)][activity.day_of_week].append(activity)
        for row in hours:
            self._hours.setdefault((row.grade_level.strip().upper(), row.day_of_week), row)

        scheduled = [s for s in sessions if s.is_scheduled]
        self._persisted = {s.id: s for s in scheduled}
        self._loaded_fingerprint = sessions_fingerprint(scheduled)
        self._index_sessions(scheduled)

        self._loaded_at = self._clock()
        self._version += 1
        self.metadata.pop("last_fetch_error", None)
        self.state = ManagerState.READY

    def _index_sessions(self, sessions: Iterable[SessionRecord]) -> None:
        for s in sessions:
            if not s.is_scheduled:
                continue
            self._sessions[s.id] = s
        self._sessions_by_day = defaultdict(list)
        for s in self._sessions.values():
            self._sessions_by_day[s.day_of_week].append(s)
        for day_sessions in self._sessions_by_day.values():
            day_sessions.sort(key=lambda s: (s.start_minutes, s.end_minutes, str(s.id)))

    def _hit(self) -> None:
        self._metrics["cache_hits"] += 1
        self._metrics["query_count"] += 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_provider_available(self, day_of_week: int, school_site: str | SchoolIdentifier | None = None) -> bool:
        self._require_loaded()
        self._hit()
        if not self._work_days:
            # No work schedule on file: assume Monday-Friday at every school.
            return day_of_week in WEEKDAYS
        school = self._as_school(school_site)
        return any(w.day_of_week == day_of_week and w.school.is_same_school(school) for w in self._work_days)

    def get_provider_work_days(self, school_site: str | SchoolIdentifier | None = None) -> list[int]:
        self._require_loaded()
        self._hit()
        if not self._work_days:
            return list(WEEKDAYS)
        school = self._as_school(school_site)
        return sorted({w.day_of_week for w in self._work_days if w.school.is_same_school(school)})

    def get_bell_schedule_conflicts(
        self, grade_level: str, day_of_week: int, start_time: str | time, end_time: str | time
    ) -> list[BellPeriod]:
        self._require_loaded()
        self._hit()
        start, end = to_minutes(start_time), to_minutes(end_time)
        periods = self._bell_by_grade.get((grade_level or "").strip().upper(), {}).get(day_of_week, [])
        return [p for p in periods if overlaps(to_minutes(p.start_time), to_minutes(p.end_time), start, end)]

    def get_special_activity_conflicts(
        self, teacher_name: str | None, day_of_week: int, start_time: str | time, end_time: str | time
    ) -> list[SpecialActivityInfo]:
        self._require_loaded()
        self._hit()
        if not teacher_name:
            return []
        start, end = to_minutes(start_time), to_minutes(end_time)
        activities = self._activities_by_teacher.get(_teacher_key(teacher_name), {}).get(day_of_week, [])
        return [a for a in activities if overlaps(to_minutes(a.start_time), to_minutes(a.end_time), start, end)]

    def get_school_hours(
        self, grade_level: str, day_of_week: int, start_time: str | time | None = None
    ) -> SchoolHoursInfo:
        """Resolve the school day for a grade.

        Kindergarten grades use their AM/PM variant when one exists for the
        session's half of the day; other grades fall back to the 'default' row.
        """

        self._require_loaded()
        self._hit()
        grade = (grade_level or "").strip().upper()
        target = grade
        if grade in _KINDERGARTEN_GRADES and start_time is not None:
            half = "AM" if parse_time(start_time).hour < 12 else "PM"
            if (f"{grade}-{half}", day_of_week) in self._hours:
                target = f"{grade}-{half}"

        hours = self._hours.get((target, day_of_week))
        if hours is None and target not in _KINDERGARTEN_VARIANTS:
            hours = self._hours.get(("DEFAULT", day_of_week))
        if hours is None:
            return SchoolHoursInfo(
                grade_level="fallback",
                day_of_week=day_of_week,
                start_time=DEFAULT_SCHOOL_START,
                end_time=DEFAULT_SCHOOL_END,
            )
        return hours

    def get_existing_sessions(
        self,
        day_of_week: int | None = None,
        time_range: tuple[str | time, str | time] | None = None,
    ) -> list[SessionRecord]:
        self._require_loaded()
        self._hit()
        if day_of_week is None:
            sessions = [s for day in sorted(self._sessions_by_day) for s in self._sessions_by_day[day]]
        else:
            sessions = list(self._sessions_by_day.get(day_of_week, []))
        if time_range is not None:
            start, end = to_minutes(time_range[0]), to_minutes(time_range[1])
            sessions = [s for s in sessions if overlaps(s.start_minutes, s.end_minutes, start, end)]
        return sessions

    def get_sessions_by_student(self, student_id: uuid.UUID) -> list[SessionRecord]:
        self._require_loaded()
        self._hit()
        return sorted(
            (s for s in self._sessions.values() if s.student_id == student_id),
            key=lambda s: (s.day_of_week, s.start_minutes),
        )

    def count_overlapping_sessions(
        self,
        day_of_week: int,
        start_time: str | time,
        end_time: str | time,
        exclude_ids: Iterable[uuid.UUID] = (),
    ) -> int:
        self._require_loaded()
        self._hit()
        excluded = set(exclude_ids)
        start, end = to_minutes(start_time), to_minutes(end_time)
        return sum(
            1
            for s in self._sessions_by_day.get(day_of_week, [])
            if s.id not in excluded and overlaps(s.start_minutes, s.end_minutes, start, end)
        )

    def get_slot_capacity(self, day_of_week: int, start_time: str | time) -> int:
        """Number of sessions that start exactly at this time."""

        self._require_loaded()
        self._hit()
        start = to_minutes(start_time)
        return sum(1 for s in self._sessions_by_day.get(day_of_week, []) if s.start_minutes == start)

    def is_slot_available(
        self,
        day_of_week: int,
        start_time: str | time,
        end_time: str | time,
        school_site: str | SchoolIdentifier | None = None,
        *,
        limit: int | None = None,
    ) -> bool:
        cap = limit if limit is not None else self.config.max_sessions_per_slot
        if not self.is_provider_available(day_of_week, school_site):
            return False
        if self.get_slot_capacity(day_of_week, start_time) >= cap:
            return False
        return self.count_overlapping_sessions(day_of_week, start_time, end_time) < cap

    # ------------------------------------------------------------------
    # Mutation + snapshots
    # ------------------------------------------------------------------

    def register_sessions(self, sessions: Iterable[SessionRecord]) -> None:
        """Add proposed placements to the working view (not persisted)."""

        self._require_loaded()
        added = [s for s in sessions if s.is_scheduled]
        if not added:
            return
        self._index_sessions(added)
        self._version += 1

    def prepare_for_snapshot(self) -> SchedulingSnapshot:
        self._require_loaded()
        sessions = tuple(self.get_existing_sessions())
        return SchedulingSnapshot(
            sessions=sessions,
            version=self._version,
            timestamp=datetime.now(timezone.utc),
            metadata={
                "provider_id": str(self.provider_id),
                "school": self.school.key() if self.school else "unknown",
                "total_sessions": len(sessions),
            },
        )

    def restore_from_snapshot(self, snapshot: SchedulingSnapshot) -> None:
        self._require_loaded()
        self._sessions = {}
        self._index_sessions(snapshot.sessions)
        # Versions only move forward, even when rolling back.
        self._version = max(self._version, snapshot.version) + 1
        logger.info("Restored scheduling snapshot version=%d -> %d", snapshot.version, self._version)

    # ------------------------------------------------------------------
    # Conflict detection
    # ------------------------------------------------------------------

    @property
    def loaded_fingerprint(self) -> str:
        return self._loaded_fingerprint

    def _fetch_persisted_sessions(self) -> list[SessionRecord]:
        repo = self._repository
        return self._fetch("sessions", lambda: repo.fetch_sessions(self.provider_id, self.school, self.provider_role))

    def fetch_persisted_fingerprint(self) -> str:
        self._require_scope()
        fresh = self._fetch_persisted_sessions()
        return sessions_fingerprint(s for s in fresh if s.is_scheduled)

    def check_for_conflicts(self) -> ConflictReport:
        """Compare the cached view with persisted state and audit the cache itself."""

        self._require_loaded()
        fresh = self._fetch_persisted_sessions()
        persisted = {s.id: s for s in fresh if s.is_scheduled}

        changes: list[SessionChange] = []
        for sid, s in persisted.items():
            known = self._persisted.get(sid)
            if known is None:
                changes.append(SessionChange("added", sid, "Session was added by another writer"))
            elif _placement(known) != _placement(s):
                changes.append(SessionChange("moved", sid, "Session was moved by another writer"))
        for sid in self._persisted:
            if sid not in persisted:
                changes.append(SessionChange("removed", sid, "Session was removed by another writer"))

        conflicts = self._integrity_conflicts()
        return ConflictReport(
            has_conflicts=bool(changes or conflicts),
            version=self._version,
            cached_fingerprint=self._loaded_fingerprint,
            persisted_fingerprint=sessions_fingerprint(persisted.values()),
            concurrent_changes=tuple(changes),
            conflicts=tuple(conflicts),
        )

    def _integrity_conflicts(self) -> list[dict[str, Any]]:
        conflicts: list[dict[str, Any]] = []
        limit = self.config.max_sessions_per_slot
        for day, sessions in sorted(self._sessions_by_day.items()):
            for i, a in enumerate(sessions):
                for b in sessions[i + 1 :]:
                    if b.start_minutes >= a.end_minutes:
                        break
                    if a.student_id == b.student_id:
                        conflicts.append(
                            {
                                "type": "double_booking",
                                "day_of_week": day,
                                "student_id": str(a.student_id),
                                "session_ids": [str(a.id), str(b.id)],
                            }
                        )
            starts = Counter(s.start_minutes for s in sessions)
            for start, count in sorted(starts.items()):
                if count > limit:
                    conflicts.append(
                        {"type": "over_capacity", "day_of_week": day, "start_minutes": start, "count": count}
                    )
        return conflicts

    def _as_school(self, school_site: str | SchoolIdentifier | None) -> SchoolIdentifier:
        if isinstance(school_site, SchoolIdentifier):
            return school_site
        if school_site is None or self.school is None:
            return self.school or SchoolIdentifier()
        if self.school.school_site and school_site == self.school.school_site:
            return self.school
        return SchoolIdentifier(school_site=school_site, school_district=self.school.school_district)


def _teacher_key(name: str | None) -> str:
    return " ".join((name or "").lower().split())
