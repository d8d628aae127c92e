"""
Tests for the Sync Orchestrator (src/pipeline/orchestrator.py).

Catalog Sync and Price Refresh are AsyncMocks for the decision logic; one
end-to-end test drives the real components against respx.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import respx
from sqlalchemy.exc import SQLAlchemyError

from conftest import BASE_URL, FakeClock, card_payload, set_payload
from src.config import OrchestratorState, SyncStatus
from src.pipeline.catalog import CatalogSync
from src.pipeline.errors import ConfigurationError, QuotaExceeded, UpstreamRequestFailed
from src.pipeline.justtcg import JustTCGCard, JustTCGClient, JustTCGSet
from src.pipeline.orchestrator import SyncOrchestrator
from src.pipeline.quota import QuotaLimiter
from src.pipeline.refresh import CardRef, CardResult, PriceRefresh, RefreshSummary
from src.pipeline.storage import SyncStorage
from src.models.sync_run import cards_kind


def _limiter(fake_clock: FakeClock, daily_limit: int = 100) -> QuotaLimiter:
    return QuotaLimiter(
        min_interval=0,
        daily_limit=daily_limit,
        clock=fake_clock.clock,
        monotonic=fake_clock.monotonic,
        sleep=fake_clock.sleep,
    )


def _sets(*ids: str) -> list[JustTCGSet]:
    return [JustTCGSet(id=set_id, name=set_id.upper()) for set_id in ids]


def _cards(n: int, set_id: str = "op01") -> list[JustTCGCard]:
    return [JustTCGCard(id=f"{set_id}-{i:03d}", name=f"Card {i}", set_id=set_id) for i in range(n)]


def _orchestrator(session_factory, limiter, catalog=None, refresh=None) -> SyncOrchestrator:
    client = JustTCGClient(api_key="test-key", base_url=BASE_URL, limiter=limiter)
    return SyncOrchestrator(
        client,
        session_factory,
        catalog=catalog or AsyncMock(spec=CatalogSync),
        refresh=refresh or AsyncMock(spec=PriceRefresh),
        quota_floor=5,
        refresh_batch_size=20,
    )


async def _seed_sets(session_factory, *set_ids: str, cards: dict[str, int] | None = None) -> None:
    async with session_factory() as session:
        storage = SyncStorage(session)
        for set_id in set_ids:
            await storage.upsert_set(set_id, set_id.upper(), "one-piece-card-game")
            for i in range((cards or {}).get(set_id, 0)):
                await storage.upsert_card(f"{set_id}-{i:03d}", f"Card {i}", set_id)
        await session.commit()


async def _complete_set(session_factory, set_id: str) -> None:
    async with session_factory() as session:
        storage = SyncStorage(session)
        run = await storage.start_sync_run(cards_kind(set_id))
        await storage.finish_sync_run(run, SyncStatus.COMPLETED, 10)


# ---------------------------------------------------------------------------
# scheduled_sync
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_below_quota_floor_skips_without_calls(fake_clock, session_factory) -> None:
    limiter = _limiter(fake_clock, daily_limit=3)
    catalog = AsyncMock(spec=CatalogSync)
    refresh = AsyncMock(spec=PriceRefresh)
    orchestrator = _orchestrator(session_factory, limiter, catalog, refresh)

    result = await orchestrator.scheduled_sync()

    assert result.skipped is True
    assert result.reason == "rate_limit"
    catalog.sync_sets.assert_not_awaited()
    refresh.select_cards_needing_update.assert_not_awaited()
    assert limiter.daily_count == 0
    assert orchestrator.state == OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_empty_catalog_bootstraps_first_set(fake_clock, session_factory) -> None:
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02")
    catalog.sync_set_cards.return_value = _cards(3)
    refresh = AsyncMock(spec=PriceRefresh)
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog, refresh)

    result = await orchestrator.scheduled_sync()

    assert result.skipped is False
    assert result.sets_synced == 2
    assert result.cards_synced == 3
    catalog.sync_set_cards.assert_awaited_once_with("op01")
    refresh.refresh_prices.assert_not_awaited()


@pytest.mark.asyncio
async def test_known_catalog_refreshes_stale_prices(fake_clock, session_factory) -> None:
    await _seed_sets(session_factory, "op01")
    catalog = AsyncMock(spec=CatalogSync)
    refresh = AsyncMock(spec=PriceRefresh)
    refresh.select_cards_needing_update.return_value = [
        CardRef(card_id="op01-001", name="Zoro", tier=0),
        CardRef(card_id="op01-002", name="Law", tier=3),
    ]
    refresh.refresh_prices.return_value = RefreshSummary(
        cards_requested=2,
        chunks_total=1,
        results=[CardResult("op01-001", 1, 1), CardResult("op01-002", 2, 2)],
    )
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog, refresh)

    result = await orchestrator.scheduled_sync()

    refresh.select_cards_needing_update.assert_awaited_once_with(20)
    refresh.refresh_prices.assert_awaited_once_with(["op01-001", "op01-002"])
    catalog.sync_sets.assert_not_awaited()
    assert result.cards_refreshed == 2
    assert result.history_points == 3


@pytest.mark.asyncio
async def test_nothing_to_refresh(fake_clock, session_factory) -> None:
    await _seed_sets(session_factory, "op01")
    refresh = AsyncMock(spec=PriceRefresh)
    refresh.select_cards_needing_update.return_value = []
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), refresh=refresh)

    result = await orchestrator.scheduled_sync()

    assert result.skipped is False
    refresh.refresh_prices.assert_not_awaited()


@pytest.mark.asyncio
async def test_trigger_while_running_is_skipped(fake_clock, session_factory) -> None:
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_sync_sets():
        entered.set()
        await release.wait()
        return []

    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.side_effect = slow_sync_sets
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    first = asyncio.create_task(orchestrator.scheduled_sync())
    await entered.wait()

    assert orchestrator.is_running
    second = await orchestrator.scheduled_sync()
    bootstrap = await orchestrator.full_bootstrap()
    gap = await orchestrator.gap_fill()

    release.set()
    first_result = await first

    assert second.skipped is True
    assert second.reason == "already_running"
    assert bootstrap.reason == "already_running"
    assert gap.reason == "already_running"
    assert first_result.skipped is False
    assert orchestrator.state == OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_upstream_failure_returns_structured_result(fake_clock, session_factory) -> None:
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.side_effect = UpstreamRequestFailed("JustTCG GET /sets returned 503", 503)
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.scheduled_sync()

    assert result.skipped is False
    assert "503" in result.error
    assert orchestrator.state == OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_configuration_error_propagates_and_releases_guard(fake_clock, session_factory) -> None:
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.side_effect = ConfigurationError("JUSTTCG_API_KEY is not configured")
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    with pytest.raises(ConfigurationError):
        await orchestrator.scheduled_sync()

    assert orchestrator.state == OrchestratorState.IDLE


# ---------------------------------------------------------------------------
# full_bootstrap / full_resync
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bootstrap_skips_completed_sets(fake_clock, session_factory) -> None:
    await _complete_set(session_factory, "op01")
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02", "op03")
    catalog.sync_set_cards.side_effect = lambda set_id: _cards(4, set_id)
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.full_bootstrap()

    assert [c.args[0] for c in catalog.sync_set_cards.await_args_list] == ["op02", "op03"]
    assert result.completed is True
    assert result.total_sets == 3
    assert result.sets_processed == 2
    assert result.cards_processed == 8
    assert result.remaining_sets == 0


@pytest.mark.asyncio
async def test_bootstrap_stops_at_quota_floor(fake_clock, session_factory) -> None:
    limiter = _limiter(fake_clock, daily_limit=10)

    def spend_quota(set_id):
        limiter._daily_count += 3
        return _cards(1, set_id)

    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02", "op03")
    catalog.sync_set_cards.side_effect = spend_quota
    orchestrator = _orchestrator(session_factory, limiter, catalog)

    result = await orchestrator.full_bootstrap()

    assert result.completed is False
    assert result.reason == "rate_limit"
    assert result.sets_processed == 2
    assert result.remaining_sets == 1


@pytest.mark.asyncio
async def test_bootstrap_counts_failed_sets_and_continues(fake_clock, session_factory) -> None:
    def flaky(set_id):
        if set_id == "op02":
            raise UpstreamRequestFailed("boom", 500)
        return _cards(2, set_id)

    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02", "op03")
    catalog.sync_set_cards.side_effect = flaky
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.full_bootstrap()

    assert result.sets_processed == 2
    assert result.sets_failed == 1
    assert result.remaining_sets == 1
    assert result.completed is False


@pytest.mark.asyncio
async def test_bootstrap_quota_exceeded_ends_run(fake_clock, session_factory) -> None:
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02")
    catalog.sync_set_cards.side_effect = [_cards(1), QuotaExceeded(100)]
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.full_bootstrap()

    assert result.reason == "quota_exhausted"
    assert result.completed is False
    assert result.sets_processed == 1
    assert orchestrator.state == OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_bootstrap_honours_shutdown(fake_clock, session_factory) -> None:
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02")
    catalog.sync_set_cards.return_value = _cards(1)
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.full_bootstrap(should_stop=lambda: True)

    assert result.reason == "shutdown"
    catalog.sync_set_cards.assert_not_awaited()


@pytest.mark.asyncio
async def test_resync_ignores_checkpoints(fake_clock, session_factory) -> None:
    await _complete_set(session_factory, "op01")
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_sets.return_value = _sets("op01", "op02")
    catalog.sync_set_cards.return_value = _cards(1)
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.full_resync()

    assert catalog.sync_set_cards.await_count == 2
    assert result.completed is True


# ---------------------------------------------------------------------------
# gap_fill
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_gap_fill_counts_new_cards(fake_clock, session_factory) -> None:
    await _seed_sets(session_factory, "op01", "op02", cards={"op01": 1, "op02": 2})
    catalog = AsyncMock(spec=CatalogSync)
    catalog.sync_set_cards.side_effect = lambda set_id: _cards(3 if set_id == "op01" else 2, set_id)
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), catalog)

    result = await orchestrator.gap_fill()

    assert result.completed is True
    assert result.sets_updated == 1
    assert result.new_cards == 2
    assert result.sets_failed == 0
    assert result.remaining_quota == 100


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scheduled_sync_end_to_end(client, session_factory) -> None:
    orchestrator = SyncOrchestrator(client, session_factory, quota_floor=5)

    with respx.mock:
        respx.get(f"{BASE_URL}/sets").mock(
            return_value=httpx.Response(200, json=[set_payload("op01"), set_payload("op02")])
        )
        respx.get(f"{BASE_URL}/cards").mock(
            return_value=httpx.Response(200, json=[card_payload("op01-001"), card_payload("op01-002")])
        )
        result = await orchestrator.scheduled_sync()

    assert result.sets_synced == 2
    assert result.cards_synced == 2
    assert client.limiter.daily_count == 2

    async with session_factory() as session:
        assert await SyncStorage(session).completed_set_ids() == {"op01"}


@pytest.mark.asyncio
async def test_refresh_storage_error_returns_structured_result(fake_clock, session_factory) -> None:
    await _seed_sets(session_factory, "op01")
    refresh = AsyncMock(spec=PriceRefresh)
    refresh.select_cards_needing_update.side_effect = SQLAlchemyError("database is locked")
    orchestrator = _orchestrator(session_factory, _limiter(fake_clock), refresh=refresh)

    result = await orchestrator.scheduled_sync()

    assert result.skipped is False
    assert "database is locked" in result.error
    refresh.refresh_prices.assert_not_awaited()
    assert orchestrator.state == OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_catalog_check_error_returns_structured_result(fake_clock) -> None:
    broken_factory = MagicMock(side_effect=SQLAlchemyError("could not connect"))
    orchestrator = _orchestrator(broken_factory, _limiter(fake_clock))

    result = await orchestrator.scheduled_sync()

    assert "could not connect" in result.error
    assert orchestrator.state == OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_scheduled_refresh_with_non_json_response(client, session_factory) -> None:
    await _seed_sets(session_factory, "op01", cards={"op01": 1})
    orchestrator = SyncOrchestrator(client, session_factory, quota_floor=5)

    with respx.mock:
        route = respx.post(f"{BASE_URL}/cards").mock(
            return_value=httpx.Response(200, text="<html>oops</html>")
        )
        result = await orchestrator.scheduled_sync()

        assert route.call_count == 1

    assert result.skipped is False
    assert result.error is None
    assert result.chunks_failed == 1
    assert result.cards_refreshed == 0
    assert orchestrator.state == OrchestratorState.IDLE
