"""
SQLAlchemy 2.0 async DeclarativeBase for OPTCG Market.

All models inherit from this Base.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import TIMESTAMP
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp on every backend.

    PostgreSQL keeps the offset natively; SQLite drops it and hands back a
    naive value, so results are re-tagged as UTC on the way out.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all OPTCG Market database models."""
    pass
