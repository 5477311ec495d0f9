from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Any, Iterable

from sqlalchemy import Select, and_, or_


_PUNCTUATION = re.compile(r"[^\w\s&]")
_WHITESPACE = re.compile(r"\s+")
_STOP_WORDS = {"the", "of", "and", "&"}


def normalize_school_name(name: str | None) -> str:
    """Lowercase, strip punctuation, collapse whitespace and drop filler words."""

    if not name:
        return ""
    lowered = _PUNCTUATION.sub(" ", name.lower())
    words = [w for w in _WHITESPACE.split(lowered.strip()) if w and w not in _STOP_WORDS]
    return " ".join(words)


@dataclass(frozen=True)
class SchoolIdentifier:
    """One school, named either by legacy site/district text or by structured IDs.

    Users who migrated to the structured directory carry both; unmigrated users
    only have the text pair. Every comparison goes through this type so the two
    worlds never diverge.
    """

    school_site: str | None = None
    school_district: str | None = None
    school_id: str | None = None
    district_id: str | None = None
    state_id: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "SchoolIdentifier":
        return cls(
            school_site=getattr(row, "school_site", None),
            school_district=getattr(row, "school_district", None),
            school_id=getattr(row, "school_id", None),
            district_id=getattr(row, "district_id", None),
            state_id=getattr(row, "state_id", None),
        )

    def is_migrated(self) -> bool:
        return bool(self.school_id)

    def is_empty(self) -> bool:
        return not (self.school_id or self.school_site)

    def key(self) -> str:
        if self.school_id:
            return f"id:{self.school_id}"
        if self.school_site:
            district = normalize_school_name(self.school_district)
            return f"text:{district}:{normalize_school_name(self.school_site)}"
        return "unknown"

    def display_name(self) -> str:
        if self.school_site and self.school_district:
            return f"{self.school_site} ({self.school_district})"
        return self.school_site or self.school_id or "Unknown school"

    def is_same_school(self, other: "SchoolIdentifier | None") -> bool:
        if other is None:
            return False
        if self.school_id and other.school_id:
            return self.school_id == other.school_id
        if not (self.school_site and other.school_site):
            return False
        if normalize_school_name(self.school_site) != normalize_school_name(other.school_site):
            return False
        # A missing district on either side is not a mismatch.
        if self.school_district and other.school_district:
            return normalize_school_name(self.school_district) == normalize_school_name(other.school_district)
        return True

    def apply_filter(self, stmt: Select, model: Any) -> Select:
        """Scope a SELECT to this school, preferring the structured ID column."""

        if self.school_id:
            if self.school_site and hasattr(model, "school_site"):
                # Rows written before migration only carry the text pair.
                legacy = model.school_site == self.school_site
                if self.school_district:
                    legacy = and_(legacy, model.school_district == self.school_district)
                return stmt.where(or_(model.school_id == self.school_id, and_(model.school_id.is_(None), legacy)))
            return stmt.where(model.school_id == self.school_id)
        if self.school_site:
            stmt = stmt.where(model.school_site == self.school_site)
            if self.school_district:
                stmt = stmt.where(model.school_district == self.school_district)
            return stmt
        return stmt

    def resolve(self, candidates: Iterable[Any]) -> "SchoolIdentifier":
        """Fill in structured IDs from school directory rows by normalized name."""

        if self.school_id or not self.school_site:
            return self
        site = normalize_school_name(self.school_site)
        district = normalize_school_name(self.school_district)
        for school in candidates:
            if normalize_school_name(getattr(school, "name", None)) != site:
                continue
            school_district = normalize_school_name(getattr(school, "district_name", None))
            if district and school_district and district != school_district:
                continue
            return replace(
                self,
                school_id=str(school.id),
                district_id=getattr(school, "district_id", None),
                state_id=getattr(school, "state_id", None),
            )
        return self


def is_same_school(a: SchoolIdentifier | None, b: SchoolIdentifier | None) -> bool:
    if a is None or b is None:
        return False
    return a.is_same_school(b)
