"""
OPTCG Market — Sync Run Model

Audit trail of every catalog sync attempt, and the resume checkpoint for
bootstrap: a set counts as synced once a completed run of kind
'cards:<set_id>' exists.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.config import SyncStatus
from src.models.base import Base, UTCDateTime

SETS_KIND = "sets"
CARDS_KIND_PREFIX = "cards:"


def cards_kind(set_id: str) -> str:
    return f"{CARDS_KIND_PREFIX}{set_id}"


class SyncRun(Base):
    """One sync attempt: started → completed | failed."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(
        String, nullable=False, comment="'sets' or 'cards:<set_id>'"
    )
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=SyncStatus.STARTED.value
    )
    started_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Null while running or after failure"
    )
    records_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sync_runs_kind_status", "kind", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncRun kind={self.kind!r} status={self.status!r} "
            f"records={self.records_synced}>"
        )
