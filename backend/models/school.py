from __future__ import annotations

from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func

from models.base import Base


class School(Base):
    """Structured school directory used to resolve legacy site/district text."""

    __tablename__ = "schools"

    # NCES-style identifiers are strings, not UUIDs.
    id = Column(Text, primary_key=True)
    district_id = Column(Text, nullable=True, index=True)
    state_id = Column(Text, nullable=True)
    name = Column(Text, nullable=False)
    district_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
