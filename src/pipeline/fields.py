"""
OPTCG Market — Upstream Field Resolution

JustTCG's card/variant payloads are not schema-stable: the same metric has
shipped under several key spellings. Each metric maps to an ordered tuple of
candidate keys, resolved by first_present(). A record with none of the
candidates yields None for that metric, never 0.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import structlog

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Alias tables (ordered: first hit wins)
# ---------------------------------------------------------------------------

VARIANT_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "price": ("price", "market_price", "marketPrice", "current_price"),
    "avg_7d": ("avg_7d", "avg7d", "avg_7_day", "avg7Day", "avgPrice", "avgPrice7d"),
    "avg_30d": ("avg_30d", "avg30d", "avg_30_day", "avg30Day", "avgPrice30d"),
    "avg_90d": ("avg_90d", "avg90d", "avg_90_day", "avg90Day", "avgPrice90d"),
    "change_24h": (
        "change_24h",
        "change24h",
        "priceChange24hr",
        "priceChange24h",
        "price_change_24hr",
    ),
    "change_7d": ("change_7d", "change7d", "priceChange7d", "price_change_7d"),
    "change_30d": ("change_30d", "change30d", "priceChange30d", "price_change_30d"),
}

CARD_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "number": ("number", "collector_number", "collectorNumber"),
    "tcgplayer_id": ("tcgplayer_id", "tcgplayerId", "tcgplayer_product_id"),
    "image_url": ("image_url", "imageUrl", "image"),
}

SET_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "release_date": ("release_date", "releaseDate", "released_at"),
    "set_value_usd": ("set_value_usd", "setValue", "set_value"),
}

# Keys tried inside a nested "images" object, largest first
IMAGE_SIZE_KEYS: tuple[str, ...] = ("large", "small", "normal")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _is_absent(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def first_present(record: Mapping[str, Any], candidates: tuple[str, ...]) -> Any:
    """Return the value of the first candidate key holding a non-empty value."""
    for key in candidates:
        value = record.get(key)
        if not _is_absent(value):
            return value
    return None


def to_decimal(value: Any) -> Decimal | None:
    """Safely convert a price-like value to Decimal. Never use float for money."""
    if _is_absent(value) or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def resolve_decimal(
    record: Mapping[str, Any],
    metric: str,
    aliases: Mapping[str, tuple[str, ...]] = VARIANT_FIELD_ALIASES,
) -> Decimal | None:
    """Resolve one numeric metric via its alias chain."""
    raw = first_present(record, aliases[metric])
    if raw is None:
        logger.debug("field_aliases_absent", metric=metric, keys=sorted(record.keys())[:20])
        return None
    return to_decimal(raw)


def resolve_text(
    record: Mapping[str, Any],
    field: str,
    aliases: Mapping[str, tuple[str, ...]] = CARD_FIELD_ALIASES,
) -> str | None:
    raw = first_present(record, aliases[field])
    return None if raw is None else str(raw)


def resolve_image_url(card: Mapping[str, Any]) -> str | None:
    """
    Image reference fallback chain:
    image_url -> imageUrl -> image -> images.{large,small,normal} -> None.

    A nested "image" object is treated like "images".
    """
    for key in CARD_FIELD_ALIASES["image_url"]:
        value = card.get(key)
        if isinstance(value, str) and value.strip():
            return value
        if isinstance(value, Mapping):
            nested = first_present(value, IMAGE_SIZE_KEYS)
            if nested is not None:
                return str(nested)

    images = card.get("images")
    if isinstance(images, Mapping):
        nested = first_present(images, IMAGE_SIZE_KEYS)
        if nested is not None:
            return str(nested)
    return None
