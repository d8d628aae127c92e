"""
OPTCG Market — Variant Model

One row per (card, condition, printing). The primary key is derived from that
triple by variant_id(), so re-syncing the same upstream data rewrites the
same rows instead of adding new ones.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DECIMAL, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime

DEFAULT_CONDITION = "Near Mint"
DEFAULT_PRINTING = "Standard"


def variant_id(card_id: str, condition: str | None, printing: str | None) -> str:
    """Deterministic variant identity: '{card_id}-{condition}-{printing}'."""
    return f"{card_id}-{condition or 'nm'}-{printing or 'standard'}"


class Variant(Base):
    """Current price snapshot and precomputed metrics for a card variant."""

    __tablename__ = "variants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    card_id: Mapped[str] = mapped_column(String, ForeignKey("cards.id"), nullable=False)
    condition: Mapped[str] = mapped_column(String, nullable=False, default=DEFAULT_CONDITION)
    printing: Mapped[str] = mapped_column(String, nullable=False, default=DEFAULT_PRINTING)

    current_price: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    avg_7d: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    avg_30d: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    avg_90d: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    change_24h: Mapped[Decimal | None] = mapped_column(
        DECIMAL(10, 2), nullable=True, comment="Percent change over 24h"
    )
    change_7d: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    change_30d: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Last price pull for this variant"
    )

    __table_args__ = (
        UniqueConstraint("card_id", "condition", "printing", name="uq_variants_card_condition_printing"),
        Index("ix_variants_card_id", "card_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Variant id={self.id!r} price={self.current_price} "
            f"updated={self.last_updated}>"
        )
