"""
OPTCG Market — Price History Model

Append-only log of price snapshots per variant.
Never updated; each successful price pull appends a new row.
Read by the valuation engine for rolling averages, percent changes and
trend slope.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DECIMAL, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime


class PriceHistory(Base):
    """
    Append-only price snapshot per variant.

    No upsert, no update. Index (variant_id, recorded_at) supports the
    90-day window scans done during metric recalculation.
    """

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    variant_id: Mapped[str] = mapped_column(
        String,
        nullable=False,
        comment="Deterministic variant id: {card_id}-{condition}-{printing}",
    )
    price: Mapped[Decimal] = mapped_column(
        DECIMAL(10, 2),
        nullable=False,
        comment="Price in USD at time of snapshot",
    )
    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
        comment="UTC timestamp of when this price was recorded",
    )

    __table_args__ = (
        Index("ix_price_history_variant_recorded", "variant_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PriceHistory variant_id={self.variant_id!r} "
            f"price={self.price} at={self.recorded_at}>"
        )
