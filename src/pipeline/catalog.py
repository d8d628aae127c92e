"""
OPTCG Market — Catalog Sync

Pulls the set list and per-set card lists (with embedded variant snapshots)
from JustTCG and upserts them. Each run is recorded in sync_runs:

    'sets'           one run per set-list sync
    'cards:<set_id>' one run per set card sync; a completed run is the
                     bootstrap resume checkpoint for that set

Writes are committed per set / per card. A failure part-way leaves every
committed row valid, and a retry rewrites the same rows.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import SyncStatus, settings
from src.models.sync_run import SETS_KIND, cards_kind
from src.pipeline.justtcg import JustTCGCard, JustTCGClient, JustTCGSet
from src.pipeline.storage import SyncStorage

logger = structlog.get_logger(__name__)


async def upsert_variants(
    storage: SyncStorage,
    card: JustTCGCard,
    now: datetime,
) -> list[tuple[str, Decimal | None]]:
    """Upsert every variant snapshot of a card. Returns (variant_id, price) pairs."""
    written = []
    for variant in card.variants:
        vid = await storage.upsert_variant(
            card_id=card.id,
            condition=variant.condition_label,
            printing=variant.printing_label,
            current_price=variant.price,
            last_updated=now,
            avg_7d=variant.avg_7d,
            avg_30d=variant.avg_30d,
            avg_90d=variant.avg_90d,
            change_24h=variant.change_24h,
            change_7d=variant.change_7d,
            change_30d=variant.change_30d,
        )
        written.append((vid, variant.price))
    return written


async def store_card(
    storage: SyncStorage,
    card: JustTCGCard,
    set_id: str,
    now: datetime,
) -> list[tuple[str, Decimal | None]]:
    """Upsert one card row and its variants."""
    await storage.upsert_card(
        card_id=card.id,
        name=card.name,
        set_id=set_id,
        rarity=card.rarity,
        number=card.number,
        tcgplayer_id=card.tcgplayer_id,
        image_url=card.image_url,
    )
    return await upsert_variants(storage, card, now)


class CatalogSync:
    """
    Set and card catalog synchronization.

    Usage:
        catalog = CatalogSync(client, session_factory)
        sets = await catalog.sync_sets()
        cards = await catalog.sync_set_cards(sets[0].id)
    """

    def __init__(
        self,
        client: JustTCGClient,
        session_factory: async_sessionmaker[AsyncSession],
        game_id: str | None = None,
    ):
        self._client = client
        self._session_factory = session_factory
        self._game_id = game_id or settings.JUSTTCG_GAME_ID

    @property
    def game_id(self) -> str:
        return self._game_id

    async def sync_sets(self) -> list[JustTCGSet]:
        """
        Fetch and upsert every set of the tracked game.

        Raises whatever the fetch raised (QuotaExceeded,
        UpstreamRequestFailed, ...) after marking the run failed.
        """
        logger.info("catalog_sync_sets_start", game_id=self._game_id)

        async with self._session_factory() as session:
            storage = SyncStorage(session)
            run = await storage.start_sync_run(SETS_KIND)

            try:
                sets = await self._client.get_sets(self._game_id)
                for card_set in sets:
                    await storage.upsert_set(
                        set_id=card_set.id,
                        name=card_set.name,
                        game_id=self._game_id,
                        release_date=card_set.release_date,
                        set_value_usd=card_set.set_value_usd,
                    )
                    await session.commit()
            except Exception as e:
                await session.rollback()
                await storage.finish_sync_run(run, SyncStatus.FAILED, error=str(e))
                logger.error(
                    "catalog_sync_sets_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            await storage.finish_sync_run(run, SyncStatus.COMPLETED, records_synced=len(sets))

        logger.info("catalog_sync_sets_complete", game_id=self._game_id, sets_synced=len(sets))
        return sets

    async def sync_set_cards(self, set_id: str) -> list[JustTCGCard]:
        """
        Fetch and upsert every card (and embedded variant) of one set.

        Raises whatever the fetch or a write raised, after marking the run
        failed. Cards committed before the failure stay committed.
        """
        logger.info("catalog_sync_set_cards_start", set_id=set_id)
        kind = cards_kind(set_id)

        async with self._session_factory() as session:
            storage = SyncStorage(session)
            run = await storage.start_sync_run(kind)

            variants_written = 0
            try:
                cards = await self._client.get_set_cards(set_id)
                now = datetime.now(timezone.utc)
                for card in cards:
                    variants_written += len(await store_card(storage, card, set_id, now))
                    await session.commit()
            except Exception as e:
                await session.rollback()
                await storage.finish_sync_run(run, SyncStatus.FAILED, error=str(e))
                logger.error(
                    "catalog_sync_set_cards_failed",
                    set_id=set_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            await storage.finish_sync_run(run, SyncStatus.COMPLETED, records_synced=len(cards))

        logger.info(
            "catalog_sync_set_cards_complete",
            set_id=set_id,
            cards_synced=len(cards),
            variants_synced=variants_written,
        )
        return cards
