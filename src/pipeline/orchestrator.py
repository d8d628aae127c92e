"""
OPTCG Market — Sync Orchestrator

Decides what a sync run does given the remaining daily quota and what is
already stored, and guarantees that at most one run is active per process.

Entry points (all share the running guard):
    scheduled_sync   recurring trigger: bootstrap the first set when the
                     catalog is empty, otherwise refresh stale prices
    full_bootstrap   resumable walk over sets with no completed card sync
    gap_fill         re-fetch every known set and count newly added cards
    full_resync      re-sync every set, ignoring completion checkpoints

Quota is checked before each set; a run below SYNC_QUOTA_FLOOR stops with a
partial result and can be resumed by invoking it again.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import OrchestratorState, settings
from src.pipeline.catalog import CatalogSync
from src.pipeline.errors import ConfigurationError, QuotaExceeded
from src.pipeline.justtcg import JustTCGClient, JustTCGSet
from src.pipeline.refresh import PriceRefresh
from src.pipeline.storage import SyncStorage

logger = structlog.get_logger(__name__)

REASON_ALREADY_RUNNING = "already_running"
REASON_RATE_LIMIT = "rate_limit"
REASON_QUOTA_EXHAUSTED = "quota_exhausted"
REASON_SHUTDOWN = "shutdown"
REASON_SETS_FETCH_FAILED = "sets_fetch_failed"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    skipped: bool = False
    reason: str | None = None
    sets_synced: int = 0
    cards_synced: int = 0
    cards_refreshed: int = 0
    history_points: int = 0
    chunks_failed: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BootstrapResult:
    completed: bool = False
    sets_processed: int = 0
    total_sets: int = 0
    cards_processed: int = 0
    sets_failed: int = 0
    remaining_sets: int = 0
    skipped: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GapFillResult:
    completed: bool = False
    sets_updated: int = 0
    new_cards: int = 0
    sets_failed: int = 0
    remaining_quota: int = 0
    skipped: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    """
    Owns the IDLE/RUNNING guard for one process.

    Usage:
        async with JustTCGClient() as client:
            orchestrator = SyncOrchestrator(client, session_factory)
            result = await orchestrator.scheduled_sync()
    """

    def __init__(
        self,
        client: JustTCGClient,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: CatalogSync | None = None,
        refresh: PriceRefresh | None = None,
        quota_floor: int | None = None,
        refresh_batch_size: int | None = None,
        game_id: str | None = None,
    ):
        self._client = client
        self._session_factory = session_factory
        self._game_id = game_id or settings.JUSTTCG_GAME_ID
        self._catalog = catalog or CatalogSync(client, session_factory, self._game_id)
        self._refresh = refresh or PriceRefresh(client, session_factory)
        self._quota_floor = quota_floor if quota_floor is not None else settings.SYNC_QUOTA_FLOOR
        self._refresh_batch_size = refresh_batch_size or settings.REFRESH_BATCH_SIZE
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == OrchestratorState.RUNNING

    def _try_acquire(self) -> bool:
        # No await between the check and the set.
        if self._state == OrchestratorState.RUNNING:
            return False
        self._state = OrchestratorState.RUNNING
        return True

    def _release(self) -> None:
        self._state = OrchestratorState.IDLE

    def _remaining_quota(self) -> int:
        return self._client.limiter.remaining_quota()

    def _below_floor(self) -> bool:
        return self._remaining_quota() < self._quota_floor

    # -----------------------------------------------------------------------
    # Scheduled sync
    # -----------------------------------------------------------------------

    async def scheduled_sync(self) -> SyncResult:
        if not self._try_acquire():
            logger.info("orchestrator_skipped", entry="scheduled_sync", reason=REASON_ALREADY_RUNNING)
            return SyncResult(skipped=True, reason=REASON_ALREADY_RUNNING)

        try:
            remaining = self._remaining_quota()
            if remaining < self._quota_floor:
                logger.warning(
                    "orchestrator_skipped",
                    entry="scheduled_sync",
                    reason=REASON_RATE_LIMIT,
                    remaining_quota=remaining,
                    quota_floor=self._quota_floor,
                )
                return SyncResult(skipped=True, reason=REASON_RATE_LIMIT)

            try:
                async with self._session_factory() as session:
                    stored_sets = await SyncStorage(session).count_sets(self._game_id)
            except Exception as e:
                logger.error(
                    "orchestrator_catalog_check_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return SyncResult(error=str(e))

            if stored_sets == 0:
                result = await self._bootstrap_first_set()
            else:
                result = await self._refresh_stale_prices()

            logger.info("orchestrator_scheduled_sync_complete", **result.to_dict())
            return result
        finally:
            self._release()

    async def _bootstrap_first_set(self) -> SyncResult:
        result = SyncResult()
        try:
            sets = await self._catalog.sync_sets()
            result.sets_synced = len(sets)
            if sets and self._remaining_quota() > 0:
                cards = await self._catalog.sync_set_cards(sets[0].id)
                result.cards_synced = len(cards)
        except ConfigurationError:
            raise
        except QuotaExceeded as e:
            result.reason = REASON_QUOTA_EXHAUSTED
            result.error = str(e)
        except Exception as e:
            result.error = str(e)
            logger.error(
                "orchestrator_bootstrap_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
        return result

    async def _refresh_stale_prices(self) -> SyncResult:
        try:
            refs = await self._refresh.select_cards_needing_update(self._refresh_batch_size)
            if not refs:
                logger.info("orchestrator_nothing_to_refresh")
                return SyncResult()

            summary = await self._refresh.refresh_prices([ref.card_id for ref in refs])
        except ConfigurationError:
            raise
        except QuotaExceeded as e:
            return SyncResult(reason=REASON_QUOTA_EXHAUSTED, error=str(e))
        except Exception as e:
            logger.error(
                "orchestrator_refresh_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return SyncResult(error=str(e))

        return SyncResult(
            reason=REASON_QUOTA_EXHAUSTED if summary.quota_exhausted else None,
            cards_refreshed=summary.cards_updated,
            history_points=summary.history_points,
            chunks_failed=summary.chunks_failed,
        )

    # -----------------------------------------------------------------------
    # Bootstrap / resync
    # -----------------------------------------------------------------------

    async def full_bootstrap(self, should_stop: Callable[[], bool] | None = None) -> BootstrapResult:
        """Sync every set that has no completed card sync yet."""
        return await self._walk_sets("full_bootstrap", resume=True, should_stop=should_stop)

    async def full_resync(self, should_stop: Callable[[], bool] | None = None) -> BootstrapResult:
        """Sync every set again, including ones already completed."""
        return await self._walk_sets("full_resync", resume=False, should_stop=should_stop)

    async def _walk_sets(
        self,
        entry: str,
        resume: bool,
        should_stop: Callable[[], bool] | None,
    ) -> BootstrapResult:
        if not self._try_acquire():
            logger.info("orchestrator_skipped", entry=entry, reason=REASON_ALREADY_RUNNING)
            return BootstrapResult(skipped=True, reason=REASON_ALREADY_RUNNING)

        try:
            if self._below_floor():
                logger.warning("orchestrator_skipped", entry=entry, reason=REASON_RATE_LIMIT)
                return BootstrapResult(skipped=True, reason=REASON_RATE_LIMIT)

            try:
                sets = await self._catalog.sync_sets()
            except ConfigurationError:
                raise
            except QuotaExceeded:
                return BootstrapResult(reason=REASON_QUOTA_EXHAUSTED)
            except Exception as e:
                logger.error("orchestrator_sets_fetch_failed", entry=entry, error=str(e))
                return BootstrapResult(reason=REASON_SETS_FETCH_FAILED)

            pending: list[JustTCGSet] = sets
            if resume:
                async with self._session_factory() as session:
                    done = await SyncStorage(session).completed_set_ids()
                pending = [s for s in sets if s.id not in done]

            result = BootstrapResult(total_sets=len(sets))
            logger.info(
                "orchestrator_walk_start",
                entry=entry,
                total_sets=len(sets),
                pending_sets=len(pending),
            )

            for card_set in pending:
                stop = self._stop_reason(should_stop)
                if stop:
                    result.reason = stop
                    break
                try:
                    cards = await self._catalog.sync_set_cards(card_set.id)
                except ConfigurationError:
                    raise
                except QuotaExceeded:
                    result.reason = REASON_QUOTA_EXHAUSTED
                    break
                except Exception as e:
                    result.sets_failed += 1
                    logger.error(
                        "orchestrator_set_failed",
                        entry=entry,
                        set_id=card_set.id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                result.sets_processed += 1
                result.cards_processed += len(cards)

            result.remaining_sets = len(pending) - result.sets_processed
            result.completed = result.remaining_sets == 0

            logger.info("orchestrator_walk_complete", entry=entry, **result.to_dict())
            return result
        finally:
            self._release()

    def _stop_reason(self, should_stop: Callable[[], bool] | None) -> str | None:
        if should_stop is not None and should_stop():
            return REASON_SHUTDOWN
        if self._below_floor():
            return REASON_RATE_LIMIT
        return None

    # -----------------------------------------------------------------------
    # Gap fill
    # -----------------------------------------------------------------------

    async def gap_fill(self, should_stop: Callable[[], bool] | None = None) -> GapFillResult:
        """Re-fetch every known set and count cards missing from storage."""
        if not self._try_acquire():
            logger.info("orchestrator_skipped", entry="gap_fill", reason=REASON_ALREADY_RUNNING)
            return GapFillResult(skipped=True, reason=REASON_ALREADY_RUNNING)

        try:
            async with self._session_factory() as session:
                storage = SyncStorage(session)
                known = [(s.id, await storage.count_cards_in_set(s.id))
                         for s in await storage.list_sets(self._game_id)]

            result = GapFillResult()
            processed = 0
            for set_id, stored_count in known:
                stop = self._stop_reason(should_stop)
                if stop:
                    result.reason = stop
                    break
                try:
                    cards = await self._catalog.sync_set_cards(set_id)
                except ConfigurationError:
                    raise
                except QuotaExceeded:
                    result.reason = REASON_QUOTA_EXHAUSTED
                    break
                except Exception as e:
                    result.sets_failed += 1
                    logger.error("orchestrator_gap_fill_set_failed", set_id=set_id, error=str(e))
                    continue

                processed += 1
                if len(cards) > stored_count:
                    result.sets_updated += 1
                    result.new_cards += len(cards) - stored_count
                    logger.info(
                        "orchestrator_gap_filled",
                        set_id=set_id,
                        stored=stored_count,
                        fetched=len(cards),
                    )

            result.completed = processed == len(known)
            result.remaining_quota = self._remaining_quota()
            logger.info("orchestrator_gap_fill_complete", **result.to_dict())
            return result
        finally:
            self._release()
