"""
OPTCG Market — Sync Scheduler

Runs the orchestrator's scheduled sync on a fixed cadence
(SYNC_POLL_INTERVAL_HOURS, 24h by default) until shutdown is signalled.
The first sync runs at startup. A sync that raises is logged and the loop
keeps going; the next attempt happens one cadence later.

With RECALCULATE_AFTER_SYNC, variant metrics are recomputed from price
history after every sync that was not skipped.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.pipeline.justtcg import JustTCGClient
from src.pipeline.orchestrator import SyncOrchestrator, SyncResult
from src.pipeline.recalculate import recalculate_variant_metrics

logger = structlog.get_logger(__name__)


class Scheduler:
    """
    Async interval loop around SyncOrchestrator.scheduled_sync.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
        cadence_hours: float | None = None,
        recalculate: bool | None = None,
        poll_check_interval: float = 5,
    ):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self._shutdown_event = asyncio.Event()

        self._cadence_minutes = (cadence_hours or settings.SYNC_POLL_INTERVAL_HOURS) * 60
        self._recalculate = settings.RECALCULATE_AFTER_SYNC if recalculate is None else recalculate
        self._poll_check_interval = poll_check_interval
        self._last_sync: datetime | None = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    async def shutdown(self) -> None:
        """Signal graceful shutdown to the scheduler loop."""
        logger.info("scheduler_shutdown_requested")
        self._shutdown_event.set()

    def _should_sync(self) -> bool:
        if self._last_sync is None:
            return True
        elapsed_minutes = (datetime.now(timezone.utc) - self._last_sync).total_seconds() / 60
        return elapsed_minutes >= self._cadence_minutes

    async def run_once(self) -> SyncResult:
        """One scheduled sync, plus metric recalculation when enabled."""
        self._last_sync = datetime.now(timezone.utc)
        result = await self.orchestrator.scheduled_sync()

        if self._recalculate and not result.skipped:
            async with self.session_factory() as session:
                await recalculate_variant_metrics(session)

        logger.info(
            "scheduler_sync_complete",
            skipped=result.skipped,
            reason=result.reason,
            next_sync_in_hours=self._cadence_minutes / 60,
        )
        return result

    async def run(self) -> None:
        """
        Main scheduler loop. Runs until shutdown is signalled.
        """
        logger.info("scheduler_started", cadence_hours=self._cadence_minutes / 60)

        try:
            while not self._shutdown_event.is_set():
                try:
                    if self._should_sync():
                        await self.run_once()

                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._poll_check_interval,
                    )
                except asyncio.TimeoutError:
                    continue
                except Exception as e:
                    logger.error(
                        "scheduler_unknown_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(self._poll_check_interval)

        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            raise
        finally:
            logger.info("scheduler_stopped")


async def run_scheduler(db_engine: Any, session_factory: async_sessionmaker[AsyncSession]) -> None:
    """
    Open the JustTCG client, build the orchestrator and run the scheduler.

    Registers SIGTERM/SIGINT handlers to trigger shutdown.
    """
    async with JustTCGClient() as client:
        orchestrator = SyncOrchestrator(client, session_factory)
        scheduler = Scheduler(orchestrator, session_factory)

        def handle_signal(_signum: int, _frame: Any) -> None:
            logger.info("scheduler_signal_received")
            asyncio.create_task(scheduler.shutdown())

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, handle_signal, signal.SIGTERM, None)
            loop.add_signal_handler(signal.SIGINT, handle_signal, signal.SIGINT, None)
        except NotImplementedError:
            logger.warning("signal_handlers_not_supported_on_platform")

        try:
            await scheduler.run()
        except Exception as e:
            logger.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
            raise
