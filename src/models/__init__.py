"""
Models package — export all SQLAlchemy models.
"""

from src.models.base import Base, UTCDateTime
from src.models.card import Card
from src.models.card_set import CardSet
from src.models.price_history import PriceHistory
from src.models.sync_run import SyncRun
from src.models.variant import Variant, variant_id

__all__ = [
    "Base",
    "Card",
    "CardSet",
    "PriceHistory",
    "SyncRun",
    "UTCDateTime",
    "Variant",
    "variant_id",
]
