"""
OPTCG Market — Admin Sync Script

On-demand triggers for the sync orchestrator and maintenance jobs. Each
command opens its own JustTCG client, so the daily quota counter starts
fresh for the process (the upstream still enforces its own budget).

Usage:
    python scripts/sync.py scheduled
    python scripts/sync.py bootstrap
    python scripts/sync.py gap-fill
    python scripts/sync.py resync
    python scripts/sync.py recalculate
    python scripts/sync.py status
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
from typing import Any

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.config import settings
from src.main import _configure_logging, create_db_engine
from src.models.sync_run import SETS_KIND
from src.pipeline.errors import SyncError
from src.pipeline.justtcg import JustTCGClient
from src.pipeline.orchestrator import SyncOrchestrator
from src.pipeline.recalculate import recalculate_variant_metrics
from src.pipeline.storage import SyncStorage

COMMANDS = ("scheduled", "bootstrap", "gap-fill", "resync", "recalculate", "status")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run an OPTCG Market sync job once and print its result as JSON.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  scheduled    one scheduled sync (bootstrap first set or refresh stale prices)
  bootstrap    sync every set without a completed card sync (resumable)
  gap-fill     re-fetch every known set and report newly added cards
  resync       re-sync every set, ignoring completion checkpoints
  recalculate  recompute variant averages/changes from price history
  status       stored counts and the last sync runs (no API calls)
""",
    )
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.LOG_LEVEL,
        help=f"Logging level (default: {settings.LOG_LEVEL}).",
    )
    return parser.parse_args(argv)


def _run_summary(run: Any) -> dict[str, Any] | None:
    if run is None:
        return None
    return {
        "kind": run.kind,
        "status": run.status,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "records_synced": run.records_synced,
        "error": run.error,
    }


async def status(session_factory: Any) -> dict[str, Any]:
    async with session_factory() as session:
        storage = SyncStorage(session)
        return {
            "sets": await storage.count_sets(settings.JUSTTCG_GAME_ID),
            "variants": await storage.count_variants(),
            "sets_completed": len(await storage.completed_set_ids()),
            "last_sets_sync": _run_summary(await storage.last_sync_run(SETS_KIND)),
            "last_sync": _run_summary(await storage.last_sync_run()),
        }


async def run_command(command: str, session_factory: Any) -> dict[str, Any]:
    if command == "status":
        return await status(session_factory)

    if command == "recalculate":
        async with session_factory() as session:
            updated = await recalculate_variant_metrics(session)
        return {"variants_updated": updated}

    stop_requested = False

    def request_stop() -> None:
        nonlocal stop_requested
        stop_requested = True

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, request_stop)
    except NotImplementedError:
        pass

    async with JustTCGClient() as client:
        orchestrator = SyncOrchestrator(client, session_factory)
        should_stop = lambda: stop_requested  # noqa: E731

        if command == "scheduled":
            result = await orchestrator.scheduled_sync()
        elif command == "bootstrap":
            result = await orchestrator.full_bootstrap(should_stop)
        elif command == "gap-fill":
            result = await orchestrator.gap_fill(should_stop)
        else:
            result = await orchestrator.full_resync(should_stop)

        output = result.to_dict()
        output["quota"] = {
            "daily_used": client.limiter.status().daily_used,
            "daily_remaining": client.limiter.status().daily_remaining,
        }
        return output


async def main() -> None:
    args = parse_args()
    _configure_logging(log_level=args.log_level)

    engine, session_factory = await create_db_engine()
    try:
        output = await run_command(args.command, session_factory)
        print(json.dumps(output, indent=2, default=str))
    except SyncError as e:
        print(f"Sync failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
