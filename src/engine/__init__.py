from src.engine.booster import booster_expected_value, normalize_rarity
from src.engine.deviation import classify_deviation, historical_valuation
from src.engine.history import (
    moving_averages,
    percent_change,
    price_at_horizon,
    price_changes,
    trend_slope,
)
from src.engine.peer import (
    peer_valuation,
    rank_by_deviation,
    rarity_peer_averages,
    set_valuation_summary,
)

__all__ = [
    "booster_expected_value",
    "classify_deviation",
    "historical_valuation",
    "moving_averages",
    "normalize_rarity",
    "peer_valuation",
    "percent_change",
    "price_at_horizon",
    "price_changes",
    "rank_by_deviation",
    "rarity_peer_averages",
    "set_valuation_summary",
    "trend_slope",
]
