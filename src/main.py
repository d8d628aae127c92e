"""
OPTCG Market — Application Entrypoint

Initializes async SQLAlchemy engine, configures structlog, and starts the
sync scheduler.

Run via:
    python -m src.main
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from src.config import settings
from src.pipeline.errors import ConfigurationError
from src.pipeline.scheduler import run_scheduler


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Third-party libraries log through stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


def _engine_options(database_url: str) -> dict[str, Any]:
    # SQLite engines use a static pool and reject pool sizing arguments
    if database_url.startswith("sqlite"):
        return {}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


async def create_db_engine(
    database_url: str | None = None,
) -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    url = database_url or settings.DATABASE_URL

    logger.info("database_engine_initializing", dialect=url.split(":", 1)[0])

    engine = create_async_engine(url, echo=False, **_engine_options(url))

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main() -> None:
    """
    Application entrypoint.

    Execution order:
    1. Configure logging (structlog JSON)
    2. Validate JustTCG credentials
    3. Create async database engine and session factory
    4. Verify database connection (health check)
    5. Run the scheduler until a shutdown signal
    """
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    logger.info("optcg_market_startup_begin", version="0.1.0")

    if not settings.JUSTTCG_API_KEY:
        logger.error("config_justtcg_api_key_missing")
        raise ConfigurationError("JUSTTCG_API_KEY is not configured")

    try:
        engine, session_factory = await create_db_engine()
    except Exception as e:
        logger.error(
            "database_engine_creation_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise

    logger.info(
        "optcg_market_startup_complete",
        game_id=settings.JUSTTCG_GAME_ID,
        sync_interval_hours=settings.SYNC_POLL_INTERVAL_HOURS,
        daily_request_limit=settings.JUSTTCG_DAILY_REQUEST_LIMIT,
    )

    try:
        await run_scheduler(engine, session_factory)
    except KeyboardInterrupt:
        logger.info("optcg_market_interrupted_by_user")
    except Exception as e:
        logger.error(
            "optcg_market_fatal_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await engine.dispose()
        logger.info("optcg_market_shutdown_complete")


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    asyncio.run(main())
