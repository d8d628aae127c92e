"""
OPTCG Market — Sync Storage Repository

Every write the sync pipeline performs goes through SyncStorage:

    - upserts (sets, cards, variants) keyed by deterministic ids, so a
      retried batch rewrites rows instead of duplicating them
    - append-only price history inserts
    - sync_runs bookkeeping (start / finish / completed checkpoints)
    - read helpers for refresh candidates, priced cards and history

Methods never commit on their own. Callers commit per card (or per set row)
so a crash mid-batch leaves only whole, individually idempotent writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import SyncStatus
from src.engine.history import HistoryPoint, MovingAverages, PriceChanges
from src.engine.peer import PricedCard
from src.models.card import Card
from src.models.card_set import CardSet
from src.models.price_history import PriceHistory
from src.models.sync_run import CARDS_KIND_PREFIX, SyncRun
from src.models.variant import DEFAULT_CONDITION, DEFAULT_PRINTING, Variant, variant_id
from src.pipeline.errors import ConfigurationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UpdateCandidate:
    """A card/variant pair eligible for a price refresh."""
    card_id: str
    name: str
    variant_id: str | None
    current_price: Decimal | None
    last_updated: datetime | None


class SyncStorage:
    """
    Repository over an AsyncSession.

    Usage:
        async with session_factory() as session:
            storage = SyncStorage(session)
            await storage.upsert_set(...)
            await session.commit()
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    def _insert(self, model: Any) -> Any:
        """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE."""
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise ConfigurationError(f"Upsert not supported for dialect {dialect!r}")

    async def _upsert(self, model: Any, values: dict[str, Any], key: str) -> None:
        stmt = self._insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[key],
            set_={k: stmt.excluded[k] for k in values if k != key},
        )
        await self._session.execute(stmt)

    # -----------------------------------------------------------------------
    # Catalog upserts
    # -----------------------------------------------------------------------

    async def upsert_set(
        self,
        set_id: str,
        name: str,
        game_id: str,
        release_date: str | None = None,
        set_value_usd: Decimal | None = None,
    ) -> None:
        await self._upsert(
            CardSet,
            {
                "id": set_id,
                "name": name,
                "game_id": game_id,
                "release_date": release_date,
                "set_value_usd": set_value_usd,
                "last_updated": datetime.now(timezone.utc),
            },
            key="id",
        )

    async def upsert_card(
        self,
        card_id: str,
        name: str,
        set_id: str,
        rarity: str | None = None,
        number: str | None = None,
        tcgplayer_id: str | None = None,
        image_url: str | None = None,
    ) -> None:
        await self._upsert(
            Card,
            {
                "id": card_id,
                "name": name,
                "set_id": set_id,
                "rarity": rarity,
                "number": number,
                "tcgplayer_id": tcgplayer_id,
                "image_url": image_url,
            },
            key="id",
        )

    async def upsert_variant(
        self,
        card_id: str,
        condition: str | None,
        printing: str | None,
        current_price: Decimal | None,
        last_updated: datetime,
        avg_7d: Decimal | None = None,
        avg_30d: Decimal | None = None,
        avg_90d: Decimal | None = None,
        change_24h: Decimal | None = None,
        change_7d: Decimal | None = None,
        change_30d: Decimal | None = None,
    ) -> str:
        """Upsert a variant row and return its deterministic id."""
        vid = variant_id(card_id, condition, printing)
        await self._upsert(
            Variant,
            {
                "id": vid,
                "card_id": card_id,
                "condition": condition or DEFAULT_CONDITION,
                "printing": printing or DEFAULT_PRINTING,
                "current_price": current_price,
                "avg_7d": avg_7d,
                "avg_30d": avg_30d,
                "avg_90d": avg_90d,
                "change_24h": change_24h,
                "change_7d": change_7d,
                "change_30d": change_30d,
                "last_updated": last_updated,
            },
            key="id",
        )
        return vid

    async def append_price_history(
        self,
        variant_id: str,
        price: Decimal,
        recorded_at: datetime,
    ) -> None:
        """Append one history point. History rows are never updated."""
        self._session.add(
            PriceHistory(variant_id=variant_id, price=price, recorded_at=recorded_at)
        )
        await self._session.flush()

    async def update_variant_metrics(
        self,
        variant_id: str,
        averages: MovingAverages,
        changes: PriceChanges,
    ) -> None:
        await self._session.execute(
            update(Variant)
            .where(Variant.id == variant_id)
            .values(**averages._asdict(), **changes._asdict())
        )

    # -----------------------------------------------------------------------
    # Sync run bookkeeping
    # -----------------------------------------------------------------------

    async def start_sync_run(self, kind: str) -> SyncRun:
        """Insert a 'started' run and commit it so it is visible even if we crash."""
        run = SyncRun(
            kind=kind,
            status=SyncStatus.STARTED.value,
            started_at=datetime.now(timezone.utc),
            records_synced=0,
        )
        self._session.add(run)
        await self._session.commit()
        return run

    async def finish_sync_run(
        self,
        run: SyncRun,
        status: SyncStatus,
        records_synced: int = 0,
        error: str | None = None,
    ) -> None:
        run.status = status.value
        run.records_synced = records_synced
        run.completed_at = datetime.now(timezone.utc) if status == SyncStatus.COMPLETED else None
        run.error = error[:500] if error else None
        await self._session.commit()

    async def completed_set_ids(self) -> set[str]:
        """Set ids with at least one completed 'cards:<id>' run."""
        result = await self._session.execute(
            select(SyncRun.kind)
            .where(
                SyncRun.kind.like(f"{CARDS_KIND_PREFIX}%"),
                SyncRun.status == SyncStatus.COMPLETED.value,
            )
            .distinct()
        )
        return {kind[len(CARDS_KIND_PREFIX):] for kind in result.scalars().all()}

    async def last_sync_run(self, kind: str | None = None) -> SyncRun | None:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(1)
        if kind is not None:
            stmt = stmt.where(SyncRun.kind == kind)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def count_sets(self, game_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(CardSet)
        if game_id is not None:
            stmt = stmt.where(CardSet.game_id == game_id)
        return (await self._session.execute(stmt)).scalar_one()

    async def list_sets(self, game_id: str | None = None) -> list[CardSet]:
        stmt = select(CardSet).order_by(CardSet.release_date, CardSet.id)
        if game_id is not None:
            stmt = stmt.where(CardSet.game_id == game_id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def count_cards_in_set(self, set_id: str) -> int:
        stmt = select(func.count()).select_from(Card).where(Card.set_id == set_id)
        return (await self._session.execute(stmt)).scalar_one()

    async def count_variants(self) -> int:
        return (await self._session.execute(select(func.count()).select_from(Variant))).scalar_one()

    async def update_candidates(
        self,
        high_value_threshold: Decimal,
        high_value_cutoff: datetime,
        stale_cutoff: datetime,
    ) -> list[UpdateCandidate]:
        """
        Card/variant rows matching any refresh criterion: no variant, never
        updated, high-value and stale since high_value_cutoff, or stale since
        stale_cutoff. Ranking happens in pipeline/refresh.py.
        """
        stmt = (
            select(
                Card.id,
                Card.name,
                Variant.id,
                Variant.current_price,
                Variant.last_updated,
            )
            .select_from(Card)
            .outerjoin(Variant, Variant.card_id == Card.id)
            .where(
                or_(
                    Variant.id.is_(None),
                    Variant.last_updated.is_(None),
                    and_(
                        Variant.current_price > high_value_threshold,
                        Variant.last_updated < high_value_cutoff,
                    ),
                    Variant.last_updated < stale_cutoff,
                )
            )
        )
        rows = (await self._session.execute(stmt)).all()
        return [
            UpdateCandidate(
                card_id=row[0],
                name=row[1],
                variant_id=row[2],
                current_price=row[3],
                last_updated=row[4],
            )
            for row in rows
        ]

    async def priced_cards(
        self,
        set_id: str | None = None,
        condition: str | None = None,
    ) -> list[PricedCard]:
        """Every card variant with a current price, for the valuation engine."""
        stmt = (
            select(Card, Variant)
            .join(Variant, Variant.card_id == Card.id)
            .where(Variant.current_price.is_not(None))
            .order_by(Variant.current_price.desc())
        )
        if set_id is not None:
            stmt = stmt.where(Card.set_id == set_id)
        if condition is not None:
            stmt = stmt.where(Variant.condition == condition)

        rows = (await self._session.execute(stmt)).all()
        return [
            PricedCard(
                card_id=card.id,
                name=card.name,
                set_id=card.set_id,
                rarity=card.rarity,
                current_price=variant.current_price,
                variant_id=variant.id,
                condition=variant.condition,
                printing=variant.printing,
                number=card.number,
                image_url=card.image_url,
                tcgplayer_id=card.tcgplayer_id,
                avg_7d=variant.avg_7d,
                avg_30d=variant.avg_30d,
                change_7d=variant.change_7d,
                change_30d=variant.change_30d,
            )
            for card, variant in rows
        ]

    async def priced_variants(self) -> list[Variant]:
        stmt = select(Variant).where(Variant.current_price.is_not(None)).order_by(Variant.id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def variant_history(
        self,
        variant_id: str,
        since: datetime | None = None,
    ) -> list[HistoryPoint]:
        """History points for a variant, newest first."""
        stmt = (
            select(PriceHistory.price, PriceHistory.recorded_at)
            .where(PriceHistory.variant_id == variant_id)
            .order_by(PriceHistory.recorded_at.desc())
        )
        if since is not None:
            stmt = stmt.where(PriceHistory.recorded_at >= since)
        rows = (await self._session.execute(stmt)).all()
        return [HistoryPoint(price=row[0], recorded_at=row[1]) for row in rows]
