"""
OPTCG Market — Rarity Peer Valuation

Reference basis (b): compare a card's current price to the average current
price of every card sharing its rarity within the same set. This is the
primary basis for the undervalued/overvalued listings.

Peer averages exclude:
    - sealed products (rarity == settings.NON_CARD_RARITY)
    - cards with no rarity
    - missing or non-positive prices
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

import structlog

from src.config import ValuationStatus, settings
from src.engine.deviation import classify_deviation
from src.engine.history import round2

logger = structlog.get_logger(__name__)

PeerKey = tuple[str, str]  # (set_id, rarity)


@dataclass(frozen=True)
class PricedCard:
    """A card variant with its current price, as read from storage."""
    card_id: str
    name: str
    set_id: str
    rarity: str | None
    current_price: Decimal | None
    variant_id: str | None = None
    condition: str | None = None
    printing: str | None = None
    number: str | None = None
    image_url: str | None = None
    tcgplayer_id: str | None = None
    avg_7d: Decimal | None = None
    avg_30d: Decimal | None = None
    change_7d: Decimal | None = None
    change_30d: Decimal | None = None


@dataclass(frozen=True)
class PeerStats:
    avg_price: Decimal
    card_count: int
    min_price: Decimal
    max_price: Decimal


@dataclass(frozen=True)
class PeerValuation:
    deviation: Decimal
    status: ValuationStatus
    current_price: Decimal
    rarity_avg: Decimal
    rarity_min: Decimal
    rarity_max: Decimal
    cards_in_rarity: int
    method: str = "rarity_comparison"


@dataclass(frozen=True)
class SetValuationSummary:
    set_id: str
    total_cards: int
    total_value: Decimal
    avg_price: Decimal | None
    undervalued_count: int
    overvalued_count: int
    top10_value: Decimal
    top_cards: list[PricedCard]


def is_real_card(rarity: str | None, non_card_rarity: str | None = None) -> bool:
    """False for sealed products and cards without a rarity."""
    sentinel = non_card_rarity if non_card_rarity is not None else settings.NON_CARD_RARITY
    return bool(rarity) and rarity != sentinel


def rarity_peer_averages(
    cards: Iterable[PricedCard],
    non_card_rarity: str | None = None,
) -> dict[PeerKey, PeerStats]:
    """Group priced cards by (set, rarity) and summarise each group."""
    groups: dict[PeerKey, list[Decimal]] = {}
    for card in cards:
        if not is_real_card(card.rarity, non_card_rarity):
            continue
        if card.current_price is None or card.current_price <= 0:
            continue
        groups.setdefault((card.set_id, card.rarity), []).append(card.current_price)

    return {
        key: PeerStats(
            avg_price=sum(prices, Decimal("0")) / len(prices),
            card_count=len(prices),
            min_price=min(prices),
            max_price=max(prices),
        )
        for key, prices in groups.items()
    }


def peer_valuation(
    card: PricedCard,
    averages: dict[PeerKey, PeerStats],
    non_card_rarity: str | None = None,
) -> PeerValuation | None:
    """Classify a card against its set/rarity peer average."""
    if not card.current_price or not is_real_card(card.rarity, non_card_rarity):
        return None

    stats = averages.get((card.set_id, card.rarity))
    if stats is None:
        return None

    result = classify_deviation(card.current_price, stats.avg_price)
    if result is None:
        return None

    return PeerValuation(
        deviation=result.deviation,
        status=result.status,
        current_price=card.current_price,
        rarity_avg=round2(stats.avg_price),
        rarity_min=stats.min_price,
        rarity_max=stats.max_price,
        cards_in_rarity=stats.card_count,
    )


def rank_by_deviation(
    cards: Iterable[PricedCard],
    status: ValuationStatus,
    limit: int = 50,
    min_price: Decimal | None = None,
) -> list[tuple[PricedCard, PeerValuation]]:
    """
    Undervalued (most negative first) or overvalued (most positive first)
    listing against peer averages. Cards priced below min_price are left
    out of the listing but still count toward the peer averages.
    """
    floor = min_price if min_price is not None else settings.LISTING_MIN_PRICE
    pool = list(cards)
    averages = rarity_peer_averages(pool)

    ranked: list[tuple[PricedCard, PeerValuation]] = []
    for card in pool:
        if card.current_price is None or card.current_price < floor:
            continue
        valuation = peer_valuation(card, averages)
        if valuation is not None and valuation.status == status:
            ranked.append((card, valuation))

    ranked.sort(
        key=lambda item: item[1].deviation,
        reverse=status == ValuationStatus.OVERVALUED,
    )

    logger.debug(
        "peer_ranking_complete",
        status=status.value,
        candidates=len(pool),
        matched=len(ranked),
        limit=limit,
    )
    return ranked[:limit]


def set_valuation_summary(set_id: str, cards: Iterable[PricedCard]) -> SetValuationSummary:
    """Totals and valuation counts for one set's real (non-sealed) cards."""
    pool = [
        c for c in cards
        if c.set_id == set_id and c.current_price is not None and is_real_card(c.rarity)
    ]
    averages = rarity_peer_averages(pool)

    undervalued = overvalued = 0
    for card in pool:
        valuation = peer_valuation(card, averages)
        if valuation is None:
            continue
        if valuation.status == ValuationStatus.UNDERVALUED:
            undervalued += 1
        elif valuation.status == ValuationStatus.OVERVALUED:
            overvalued += 1

    total_value = sum((c.current_price for c in pool), Decimal("0"))
    top_cards = sorted(pool, key=lambda c: c.current_price, reverse=True)[:10]

    return SetValuationSummary(
        set_id=set_id,
        total_cards=len(pool),
        total_value=round2(total_value),
        avg_price=round2(total_value / len(pool)) if pool else None,
        undervalued_count=undervalued,
        overvalued_count=overvalued,
        top10_value=round2(sum((c.current_price for c in top_cards), Decimal("0"))),
        top_cards=top_cards,
    )
