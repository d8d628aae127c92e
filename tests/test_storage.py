"""
Tests for the sync storage repository (src/pipeline/storage.py) and models.

Uses aiosqlite in-memory database; upserts go through SQLite's
INSERT ... ON CONFLICT DO UPDATE.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import SyncStatus
from src.models import Card, CardSet, PriceHistory, Variant, variant_id
from src.models.sync_run import SETS_KIND, cards_kind
from src.pipeline.errors import ConfigurationError
from src.pipeline.storage import SyncStorage


async def _count(session: AsyncSession, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _seed_card(storage: SyncStorage, card_id: str = "op01-001", rarity: str = "SR") -> None:
    await storage.upsert_set("op01", "Romance Dawn", "one-piece-card-game", "2022-12-02")
    await storage.upsert_card(card_id, f"Card {card_id}", "op01", rarity=rarity)


# ---------------------------------------------------------------------------
# Identity / upserts
# ---------------------------------------------------------------------------


def test_variant_id_is_deterministic() -> None:
    assert variant_id("op01-001", "Near Mint", "Foil") == "op01-001-Near Mint-Foil"
    assert variant_id("op01-001", None, None) == "op01-001-nm-standard"
    assert variant_id("x", "LP", "Foil") == variant_id("x", "LP", "Foil")


@pytest.mark.asyncio
async def test_upsert_set_overwrites_mutable_fields(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)

    await storage.upsert_set("op01", "Romance Dawn", "one-piece-card-game")
    await storage.upsert_set("op01", "Romance Dawn [OP-01]", "one-piece-card-game", "2022-12-02")
    await db_session.commit()

    rows = (await db_session.execute(select(CardSet))).scalars().all()
    assert len(rows) == 1
    assert rows[0].name == "Romance Dawn [OP-01]"
    assert rows[0].release_date == "2022-12-02"


@pytest.mark.asyncio
async def test_unsupported_dialect_is_configuration_error() -> None:
    session = MagicMock()
    session.get_bind.return_value.dialect.name = "mysql"

    with pytest.raises(ConfigurationError):
        await SyncStorage(session).upsert_set("op01", "Romance Dawn", "one-piece-card-game")

    session.execute.assert_not_called()


@pytest.mark.asyncio
async def test_upsert_variant_is_idempotent(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)
    await _seed_card(storage)
    now = datetime.now(timezone.utc)

    first = await storage.upsert_variant("op01-001", "Near Mint", "Normal", Decimal("3.00"), now)
    second = await storage.upsert_variant("op01-001", "Near Mint", "Normal", Decimal("3.50"), now)
    await db_session.commit()

    assert first == second
    assert await _count(db_session, Variant) == 1
    variant = (await db_session.execute(select(Variant))).scalar_one()
    assert variant.current_price == Decimal("3.50")


@pytest.mark.asyncio
async def test_timestamps_read_back_timezone_aware(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)
    await _seed_card(storage)
    stamp = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)

    await storage.upsert_variant("op01-001", None, None, Decimal("1"), stamp)
    await db_session.commit()

    variant = (await db_session.execute(select(Variant))).scalar_one()
    assert variant.last_updated == stamp
    assert variant.last_updated.tzinfo is not None


@pytest.mark.asyncio
async def test_price_history_is_append_only(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)
    now = datetime.now(timezone.utc)

    await storage.append_price_history("v1", Decimal("1.00"), now - timedelta(days=1))
    await storage.append_price_history("v1", Decimal("1.00"), now)
    await db_session.commit()

    assert await _count(db_session, PriceHistory) == 2
    history = await storage.variant_history("v1")
    assert [p.recorded_at for p in history] == [now, now - timedelta(days=1)]


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_run_lifecycle(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)

    run = await storage.start_sync_run(cards_kind("op01"))
    assert run.status == SyncStatus.STARTED.value
    assert run.completed_at is None

    await storage.finish_sync_run(run, SyncStatus.COMPLETED, records_synced=121)

    last = await storage.last_sync_run(cards_kind("op01"))
    assert last.status == SyncStatus.COMPLETED.value
    assert last.records_synced == 121
    assert last.completed_at is not None


@pytest.mark.asyncio
async def test_failed_run_has_no_completed_at(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)

    run = await storage.start_sync_run(SETS_KIND)
    await storage.finish_sync_run(run, SyncStatus.FAILED, error="boom")

    last = await storage.last_sync_run(SETS_KIND)
    assert last.status == SyncStatus.FAILED.value
    assert last.completed_at is None
    assert last.error == "boom"


@pytest.mark.asyncio
async def test_completed_set_ids(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)

    done = await storage.start_sync_run(cards_kind("op01"))
    await storage.finish_sync_run(done, SyncStatus.COMPLETED, 10)
    failed = await storage.start_sync_run(cards_kind("op02"))
    await storage.finish_sync_run(failed, SyncStatus.FAILED, error="503")
    await storage.start_sync_run(cards_kind("op03"))  # still running
    sets_run = await storage.start_sync_run(SETS_KIND)
    await storage.finish_sync_run(sets_run, SyncStatus.COMPLETED, 3)

    assert await storage.completed_set_ids() == {"op01"}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_counts_and_listing(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)
    await storage.upsert_set("op02", "Paramount War", "one-piece-card-game", "2023-03-10")
    await storage.upsert_set("op01", "Romance Dawn", "one-piece-card-game", "2022-12-02")
    await storage.upsert_set("other", "Other", "another-game")
    await storage.upsert_card("op01-001", "Zoro", "op01")
    await storage.upsert_card("op01-002", "Law", "op01")
    await db_session.commit()

    assert await storage.count_sets("one-piece-card-game") == 2
    assert await storage.count_sets() == 3
    assert [s.id for s in await storage.list_sets("one-piece-card-game")] == ["op01", "op02"]
    assert await storage.count_cards_in_set("op01") == 2
    assert await storage.count_cards_in_set("op02") == 0


@pytest.mark.asyncio
async def test_update_candidates_filters_fresh_variants(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)
    now = datetime.now(timezone.utc)
    await storage.upsert_set("op01", "Romance Dawn", "one-piece-card-game")
    for card_id in ("none", "fresh", "hv", "old"):
        await storage.upsert_card(card_id, card_id, "op01")
    await storage.upsert_variant("fresh", None, None, Decimal("50"), now - timedelta(hours=1))
    await storage.upsert_variant("hv", None, None, Decimal("50"), now - timedelta(hours=25))
    await storage.upsert_variant("old", None, None, Decimal("2"), now - timedelta(days=8))
    await db_session.commit()

    candidates = await storage.update_candidates(
        high_value_threshold=Decimal("5"),
        high_value_cutoff=now - timedelta(hours=24),
        stale_cutoff=now - timedelta(days=7),
    )

    by_card = {c.card_id: c for c in candidates}
    assert set(by_card) == {"none", "hv", "old"}
    assert by_card["none"].variant_id is None


@pytest.mark.asyncio
async def test_priced_cards_joins_card_and_variant(db_session: AsyncSession) -> None:
    storage = SyncStorage(db_session)
    now = datetime.now(timezone.utc)
    await _seed_card(storage, "op01-120", rarity="SEC")
    await _seed_card(storage, "op01-001", rarity="L")
    await storage.upsert_variant("op01-120", "Near Mint", "Foil", Decimal("60"), now)
    await storage.upsert_variant("op01-120", "Lightly Played", "Foil", Decimal("45"), now)
    await storage.upsert_variant("op01-001", "Near Mint", "Normal", None, now)
    await db_session.commit()

    priced = await storage.priced_cards("op01")
    assert [(p.card_id, p.current_price) for p in priced] == [
        ("op01-120", Decimal("60")),
        ("op01-120", Decimal("45")),
    ]

    near_mint = await storage.priced_cards("op01", condition="Near Mint")
    assert len(near_mint) == 1
    assert near_mint[0].rarity == "SEC"
