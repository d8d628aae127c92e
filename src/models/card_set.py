"""
OPTCG Market — Set Model

One row per JustTCG set of the tracked game. Identity is the upstream set id;
name, release date and aggregate value are overwritten on every re-sync.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DECIMAL, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class CardSet(Base):
    """A printed set (e.g. "Romance Dawn"), as reported by JustTCG."""

    __tablename__ = "sets"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, comment="JustTCG set id (e.g. 'romance-dawn-one-piece-card-game')"
    )
    name: Mapped[str] = mapped_column(String, nullable=False, comment="Display name")
    game_id: Mapped[str] = mapped_column(
        String, nullable=False, index=True, comment="JustTCG game id"
    )
    release_date: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Release date as reported upstream (ISO string)"
    )
    set_value_usd: Mapped[Decimal | None] = mapped_column(
        DECIMAL(12, 2), nullable=True, comment="Aggregate set value if upstream provides one"
    )
    last_updated: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=True,
        comment="Last time this set was upserted",
    )

    def __repr__(self) -> str:
        return f"<CardSet id={self.id!r} name={self.name!r}>"
