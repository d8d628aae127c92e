"""
OPTCG Market — Incremental Price Refresh

Keeps known cards fresh without re-walking the catalog.

Selection tiers (lower refreshes first):
    0  card has no variant at all
    1  variant never updated (last_updated is NULL)
    2  high-value variant (price > HIGH_VALUE_THRESHOLD) older than 24h
    3  any variant older than STALE_DAYS

Within a tier: current price descending (NULL as 0), then oldest first.
A card is listed once, at the best tier any of its variants earns.

Refresh fetches cards in chunks of the client's batch limit, upserts every
returned variant and appends one price history point per priced variant.
Each card is committed on its own, so a crash mid-chunk keeps the cards
already written and a retry simply appends the next observation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.pipeline.catalog import upsert_variants
from src.pipeline.errors import QuotaExceeded, UpstreamRequestFailed
from src.pipeline.justtcg import JustTCGCard, JustTCGClient
from src.pipeline.storage import SyncStorage, UpdateCandidate

logger = structlog.get_logger(__name__)

TIER_NO_VARIANT = 0
TIER_NEVER_UPDATED = 1
TIER_HIGH_VALUE_STALE = 2
TIER_STALE = 3

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class CardRef:
    card_id: str
    name: str
    tier: int
    current_price: Decimal | None = None
    last_updated: datetime | None = None


@dataclass(frozen=True)
class CardResult:
    card_id: str
    variants_updated: int
    history_points: int


@dataclass
class RefreshSummary:
    cards_requested: int = 0
    chunks_total: int = 0
    chunks_failed: int = 0
    quota_exhausted: bool = False
    results: list[CardResult] = field(default_factory=list)

    @property
    def cards_updated(self) -> int:
        return len(self.results)

    @property
    def history_points(self) -> int:
        return sum(r.history_points for r in self.results)


def candidate_tier(
    candidate: UpdateCandidate,
    now: datetime,
    high_value_threshold: Decimal,
    high_value_stale: timedelta,
    stale: timedelta,
) -> int | None:
    """Tier for one card/variant row, or None when it is fresh enough."""
    if candidate.variant_id is None:
        return TIER_NO_VARIANT
    if candidate.last_updated is None:
        return TIER_NEVER_UPDATED

    age = now - candidate.last_updated
    price = candidate.current_price
    if price is not None and price > high_value_threshold and age > high_value_stale:
        return TIER_HIGH_VALUE_STALE
    if age > stale:
        return TIER_STALE
    return None


def rank_update_candidates(
    candidates: Iterable[UpdateCandidate],
    now: datetime,
    limit: int,
    high_value_threshold: Decimal | None = None,
    high_value_stale: timedelta | None = None,
    stale: timedelta | None = None,
) -> list[CardRef]:
    """Tier, dedupe per card and order candidate rows. Pure."""
    threshold = high_value_threshold if high_value_threshold is not None else settings.HIGH_VALUE_THRESHOLD
    hv_stale = high_value_stale or timedelta(hours=settings.HIGH_VALUE_STALE_HOURS)
    stale_after = stale or timedelta(days=settings.STALE_DAYS)

    def sort_key(ref: CardRef) -> tuple:
        return (
            ref.tier,
            -(ref.current_price or Decimal("0")),
            ref.last_updated or _EPOCH,
        )

    best: dict[str, CardRef] = {}
    for candidate in candidates:
        tier = candidate_tier(candidate, now, threshold, hv_stale, stale_after)
        if tier is None:
            continue
        ref = CardRef(
            card_id=candidate.card_id,
            name=candidate.name,
            tier=tier,
            current_price=candidate.current_price,
            last_updated=candidate.last_updated,
        )
        current = best.get(ref.card_id)
        if current is None or sort_key(ref) < sort_key(current):
            best[ref.card_id] = ref

    return sorted(best.values(), key=sort_key)[:limit]


def chunked(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class PriceRefresh:
    """
    Incremental refresh of known cards.

    Usage:
        refresh = PriceRefresh(client, session_factory)
        refs = await refresh.select_cards_needing_update(20)
        summary = await refresh.refresh_prices([r.card_id for r in refs])
    """

    def __init__(
        self,
        client: JustTCGClient,
        session_factory: async_sessionmaker[AsyncSession],
        batch_limit: int | None = None,
    ):
        self._client = client
        self._session_factory = session_factory
        self._batch_limit = batch_limit or client.batch_limit

    async def select_cards_needing_update(
        self,
        limit: int,
        now: datetime | None = None,
    ) -> list[CardRef]:
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as session:
            candidates = await SyncStorage(session).update_candidates(
                high_value_threshold=settings.HIGH_VALUE_THRESHOLD,
                high_value_cutoff=now - timedelta(hours=settings.HIGH_VALUE_STALE_HOURS),
                stale_cutoff=now - timedelta(days=settings.STALE_DAYS),
            )

        refs = rank_update_candidates(candidates, now, limit)
        logger.info(
            "refresh_candidates_selected",
            candidates=len(candidates),
            selected=len(refs),
            limit=limit,
        )
        return refs

    async def refresh_prices(self, card_ids: list[str]) -> RefreshSummary:
        """
        Refresh the given cards in chunks of the batch limit.

        Upstream or storage failures skip the chunk (or card) and are logged.
        QuotaExceeded ends the refresh and sets summary.quota_exhausted.
        """
        chunks = chunked(list(card_ids), self._batch_limit)
        summary = RefreshSummary(cards_requested=len(card_ids), chunks_total=len(chunks))
        if not chunks:
            return summary

        logger.info("refresh_start", cards=len(card_ids), chunks=len(chunks))

        async with self._session_factory() as session:
            storage = SyncStorage(session)
            for index, chunk in enumerate(chunks):
                try:
                    cards = await self._client.get_cards_by_ids(chunk)
                except QuotaExceeded as e:
                    summary.quota_exhausted = True
                    logger.warning(
                        "refresh_quota_exhausted",
                        chunk=index,
                        chunks_remaining=len(chunks) - index,
                        error=str(e),
                    )
                    break
                except UpstreamRequestFailed as e:
                    summary.chunks_failed += 1
                    logger.error(
                        "refresh_chunk_failed",
                        chunk=index,
                        status_code=e.status_code,
                        error=str(e),
                    )
                    continue

                now = datetime.now(timezone.utc)
                chunk_failed = False
                for card in cards:
                    try:
                        result = await self._store_card(storage, card, now)
                        await session.commit()
                    except SQLAlchemyError as e:
                        await session.rollback()
                        chunk_failed = True
                        logger.error(
                            "refresh_card_store_failed",
                            card_id=card.id,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        continue
                    summary.results.append(result)

                if chunk_failed:
                    summary.chunks_failed += 1

        logger.info(
            "refresh_complete",
            cards_requested=summary.cards_requested,
            cards_updated=summary.cards_updated,
            history_points=summary.history_points,
            chunks_failed=summary.chunks_failed,
            quota_exhausted=summary.quota_exhausted,
        )
        return summary

    async def _store_card(
        self,
        storage: SyncStorage,
        card: JustTCGCard,
        now: datetime,
    ) -> CardResult:
        written = await upsert_variants(storage, card, now)
        points = 0
        for vid, price in written:
            if price is not None:
                await storage.append_price_history(vid, price, now)
                points += 1
        return CardResult(card_id=card.id, variants_updated=len(written), history_points=points)
