"""
OPTCG Market — Card Model

Catalog entry for a single card (or sealed product) within a set. Upserted by
Catalog Sync keyed on the upstream card id. Sealed products carry the
sentinel rarity settings.NON_CARD_RARITY and are excluded from peer averages.
"""

from __future__ import annotations

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Card(Base):
    """A card as reported by JustTCG."""

    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(String, primary_key=True, comment="JustTCG card id")
    name: Mapped[str] = mapped_column(String, nullable=False)
    set_id: Mapped[str] = mapped_column(
        String, ForeignKey("sets.id"), nullable=False, comment="Owning set"
    )
    rarity: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Raw upstream rarity label (e.g. 'Secret Rare', 'SR')"
    )
    number: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Printed collector number (e.g. 'OP01-120')"
    )
    tcgplayer_id: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="TCGPlayer product id"
    )
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index("ix_cards_set_rarity", "set_id", "rarity"),
    )

    def __repr__(self) -> str:
        return f"<Card id={self.id!r} name={self.name!r} rarity={self.rarity!r}>"
