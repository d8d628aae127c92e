"""
OPTCG Market — Price History Metrics

Pure functions over a variant's price history:
    - rolling averages over trailing 7/30/90-day windows
    - percent change vs. the price at a 24h/7d/30d horizon
    - least-squares trend slope over a trailing window

"Price at horizon H" is the most recent point recorded at or before
now - H, not the point nearest to the boundary. An empty window or a missing
horizon point yields None, never 0.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, NamedTuple

import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

AVERAGE_WINDOWS: dict[str, timedelta] = {
    "avg_7d": timedelta(days=7),
    "avg_30d": timedelta(days=30),
    "avg_90d": timedelta(days=90),
}

CHANGE_HORIZONS: dict[str, timedelta] = {
    "change_24h": timedelta(hours=24),
    "change_7d": timedelta(days=7),
    "change_30d": timedelta(days=30),
}

_CENT = Decimal("0.01")


class HistoryPoint(NamedTuple):
    price: Decimal | None
    recorded_at: datetime


class MovingAverages(NamedTuple):
    avg_7d: Decimal | None
    avg_30d: Decimal | None
    avg_90d: Decimal | None


class PriceChanges(NamedTuple):
    change_24h: Decimal | None
    change_7d: Decimal | None
    change_30d: Decimal | None


def round2(value: Decimal) -> Decimal:
    """Round half-up to 2 decimal places."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _priced(history: Iterable[HistoryPoint]) -> list[HistoryPoint]:
    return [p for p in history if p.price is not None]


def window_average(
    history: Iterable[HistoryPoint],
    now: datetime,
    window: timedelta,
) -> Decimal | None:
    """Mean price of points recorded within [now - window, now]."""
    cutoff = now - window
    prices = [p.price for p in _priced(history) if cutoff <= p.recorded_at <= now]
    if not prices:
        return None
    return round2(sum(prices, Decimal("0")) / len(prices))


def moving_averages(history: Iterable[HistoryPoint], now: datetime) -> MovingAverages:
    """7/30/90-day trailing averages; None for any window with no points."""
    points = list(history)
    return MovingAverages(
        **{name: window_average(points, now, window) for name, window in AVERAGE_WINDOWS.items()}
    )


def price_at_horizon(
    history: Iterable[HistoryPoint],
    now: datetime,
    horizon: timedelta,
) -> Decimal | None:
    """Price of the most recent point recorded at or before now - horizon."""
    boundary = now - horizon
    candidates = [p for p in _priced(history) if p.recorded_at <= boundary]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.recorded_at).price


def percent_change(current: Decimal | None, past: Decimal | None) -> Decimal | None:
    """
    (current - past) / past * 100, rounded to 2 dp.

    None when either price is missing or past <= 0.
    """
    if current is None or past is None or past <= 0:
        return None
    return round2((current - past) / past * 100)


def price_changes(
    current: Decimal | None,
    history: Iterable[HistoryPoint],
    now: datetime,
) -> PriceChanges:
    points = list(history)
    return PriceChanges(
        **{
            name: percent_change(current, price_at_horizon(points, now, horizon))
            for name, horizon in CHANGE_HORIZONS.items()
        }
    )


def _least_squares_slope(xs: list[float], ys: list[float]) -> float | None:
    """Slope dy/dx of the least-squares fit; None if all x are identical."""
    n = len(xs)
    sum_x = sum(xs)
    sum_y = sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_x2 = sum(x * x for x in xs)

    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0.0:
        return None

    return (n * sum_xy - sum_x * sum_y) / denom


def trend_slope(
    history: Iterable[HistoryPoint],
    now: datetime,
    window: timedelta | None = None,
) -> Decimal | None:
    """
    Linear-regression slope of price over the trailing window.

    Units: price (USD) per day. Uses the same inclusion rule as the rolling
    averages. Returns None with fewer than 2 usable points.
    """
    cutoff = now - (window or timedelta(days=settings.TREND_WINDOW_DAYS))
    points = sorted(
        (p for p in _priced(history) if cutoff <= p.recorded_at <= now),
        key=lambda p: p.recorded_at,
    )
    if len(points) < 2:
        return None

    origin = points[0].recorded_at
    xs = [(p.recorded_at - origin).total_seconds() / 86400.0 for p in points]
    ys = [float(p.price) for p in points]

    slope = _least_squares_slope(xs, ys)
    if slope is None:
        logger.debug("trend_slope_degenerate", points=len(points))
        return None

    try:
        return Decimal(str(round(slope, 4)))
    except InvalidOperation:
        return None
