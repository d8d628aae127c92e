"""
OPTCG Market — Booster Box Expected Value

EV_box = Σ over rarities ( mean price of the set's cards of that rarity
                           × expected pulls of that rarity per box )

Rarity labels are normalized to canonical short codes ("Secret Rare" → "SEC")
before the pull-rate lookup; a rarity with no pull rate counts as 1 pull.

With a box price:
    ev_ratio = EV / box_price
    profit   = EV - box_price
    status   = GOOD_VALUE if ratio > 1.1, POOR_VALUE if ratio < 0.9,
               else FAIR_VALUE

No priced cards → None, so callers can tell "no data" from "worth $0".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping

import structlog

from src.config import EVStatus, settings
from src.engine.history import round2
from src.engine.peer import PricedCard
from src.models.variant import DEFAULT_CONDITION

logger = structlog.get_logger(__name__)

UNKNOWN_RARITY = "Unknown"

_RARITY_MAP: dict[str, str] = {
    "SECRET RARE": "SEC",
    "SEC": "SEC",
    "SUPER RARE": "SR",
    "SR": "SR",
    "RARE": "R",
    "R": "R",
    "UNCOMMON": "UC",
    "UC": "UC",
    "COMMON": "C",
    "C": "C",
    "LEADER": "Leader",
    "L": "Leader",
    "SPECIAL": "SP",
    "SP": "SP",
    "ALTERNATE ART": "Alt Art",
    "ALT ART": "Alt Art",
    "MANGA": "Manga",
}


def normalize_rarity(rarity: str | None) -> str:
    """Map a raw rarity label to its canonical code; unknown labels pass through."""
    if not rarity or not rarity.strip():
        return UNKNOWN_RARITY
    return _RARITY_MAP.get(rarity.strip().upper(), rarity.strip())


@dataclass(frozen=True)
class RarityEV:
    card_count: int
    avg_price: Decimal
    pull_rate: Decimal
    ev: Decimal


@dataclass(frozen=True)
class BoxValuation:
    box_price: Decimal
    ev_ratio: Decimal
    profit: Decimal
    status: EVStatus


@dataclass(frozen=True)
class EVResult:
    set_id: str
    total_ev: Decimal
    card_count: int
    breakdown: dict[str, RarityEV]
    valuation: BoxValuation | None = None
    top_cards: list[PricedCard] = field(default_factory=list)

    @property
    def ev_ratio(self) -> Decimal | None:
        return self.valuation.ev_ratio if self.valuation else None


def _box_status(ratio: Decimal) -> EVStatus:
    if ratio > settings.EV_GOOD_VALUE_RATIO:
        return EVStatus.GOOD_VALUE
    if ratio < settings.EV_POOR_VALUE_RATIO:
        return EVStatus.POOR_VALUE
    return EVStatus.FAIR_VALUE


def booster_expected_value(
    set_id: str,
    cards: Iterable[PricedCard],
    pull_rates: Mapping[str, Decimal] | None = None,
    box_price: Decimal | None = None,
    condition: str | None = DEFAULT_CONDITION,
) -> EVResult | None:
    """
    Expected value of one booster box of a set.

    Args:
        set_id: Set to evaluate; cards from other sets are ignored.
        cards: Priced cards (one entry per variant).
        pull_rates: Canonical rarity → expected pulls per box
            (default: settings.PULL_RATES).
        box_price: Optional market price of a sealed box.
        condition: Only variants in this condition count (None = any).

    Returns:
        EVResult, or None when the set has no priced cards.
    """
    rates = pull_rates if pull_rates is not None else settings.PULL_RATES

    priced = [
        c for c in cards
        if c.set_id == set_id
        and c.current_price is not None
        and (condition is None or c.condition in (None, condition))
        and c.rarity != settings.NON_CARD_RARITY
    ]
    if not priced:
        logger.debug("booster_ev_no_priced_cards", set_id=set_id)
        return None

    groups: dict[str, list[PricedCard]] = {}
    for card in priced:
        groups.setdefault(normalize_rarity(card.rarity), []).append(card)

    total_ev = Decimal("0")
    breakdown: dict[str, RarityEV] = {}
    for rarity, group in groups.items():
        pull_rate = Decimal(str(rates.get(rarity, 1)))
        avg_price = sum((c.current_price for c in group), Decimal("0")) / len(group)
        rarity_ev = avg_price * pull_rate
        breakdown[rarity] = RarityEV(
            card_count=len(group),
            avg_price=round2(avg_price),
            pull_rate=pull_rate,
            ev=round2(rarity_ev),
        )
        total_ev += rarity_ev

    valuation = None
    if box_price is not None and box_price > 0:
        ratio = total_ev / box_price
        valuation = BoxValuation(
            box_price=box_price,
            ev_ratio=round2(ratio),
            profit=round2(total_ev - box_price),
            status=_box_status(ratio),
        )

    top_cards = sorted(priced, key=lambda c: c.current_price, reverse=True)[:10]

    logger.debug(
        "booster_ev_calculated",
        set_id=set_id,
        total_ev=str(round2(total_ev)),
        rarities=len(breakdown),
        card_count=len(priced),
    )
    return EVResult(
        set_id=set_id,
        total_ev=round2(total_ev),
        card_count=len(priced),
        breakdown=breakdown,
        valuation=valuation,
        top_cards=top_cards,
    )
