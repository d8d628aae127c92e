"""
OPTCG Market — Deviation Classification

Classifies a current price against a reference average:

    deviation% = (current - reference) / reference * 100

    | deviation      | status      |
    |:---------------|:------------|
    | > +15%         | OVERVALUED  |
    | < -15%         | UNDERVALUED |
    | otherwise      | FAIR        |

Thresholds are strict: exactly +15.0% is FAIR, exactly -15.0% is FAIR.
The comparison uses the unrounded deviation; the reported value is rounded
to 2 dp.

Two reference bases use this classifier:
    (a) the variant's own 30-day average (historical_valuation, here)
    (b) the set/rarity peer average (engine/peer.py)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog

from src.config import ValuationStatus, settings
from src.engine.history import round2

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeviationResult:
    deviation: Decimal
    status: ValuationStatus


def classify_deviation(
    current: Decimal | None,
    reference: Decimal | None,
    overvalued_threshold: Decimal | None = None,
    undervalued_threshold: Decimal | None = None,
) -> DeviationResult | None:
    """
    Classify current vs. reference.

    Returns None when either price is missing or reference <= 0.
    """
    if current is None or reference is None or reference <= 0:
        return None

    over = overvalued_threshold if overvalued_threshold is not None else settings.OVERVALUED_THRESHOLD
    under = undervalued_threshold if undervalued_threshold is not None else settings.UNDERVALUED_THRESHOLD

    deviation = (current - reference) / reference * 100

    if deviation > over:
        status = ValuationStatus.OVERVALUED
    elif deviation < under:
        status = ValuationStatus.UNDERVALUED
    else:
        status = ValuationStatus.FAIR

    return DeviationResult(deviation=round2(deviation), status=status)


def trend_label(change_7d: Decimal | None) -> str:
    if change_7d is None:
        return "unknown"
    if change_7d > 0:
        return "rising"
    if change_7d < 0:
        return "falling"
    return "stable"


@dataclass(frozen=True)
class HistoricalValuation:
    """Valuation of a variant against its own 30-day average."""
    deviation: Decimal
    status: ValuationStatus
    current_price: Decimal
    avg_30d: Decimal
    avg_7d: Decimal | None
    trend: str
    change_7d: Decimal | None
    change_30d: Decimal | None
    method: str = "historical"


def historical_valuation(variant: Any) -> HistoricalValuation | None:
    """
    Reference basis (a): compare a variant to its own 30-day average.

    Accepts anything exposing current_price, avg_30d, avg_7d, change_7d and
    change_30d (a Variant row or a PricedCard).
    """
    result = classify_deviation(variant.current_price, variant.avg_30d)
    if result is None:
        return None

    return HistoricalValuation(
        deviation=result.deviation,
        status=result.status,
        current_price=variant.current_price,
        avg_30d=variant.avg_30d,
        avg_7d=getattr(variant, "avg_7d", None),
        trend=trend_label(getattr(variant, "change_7d", None)),
        change_7d=getattr(variant, "change_7d", None),
        change_30d=getattr(variant, "change_30d", None),
    )
