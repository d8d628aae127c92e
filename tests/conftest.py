"""
OPTCG Market — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory SQLite database (aiosqlite) with the full schema
- Deterministic clock/sleep for the quota limiter
- JustTCG client wired to a test base URL (mock with respx)
- Upstream payload builders
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.models import Base
from src.pipeline.justtcg import JustTCGClient
from src.pipeline.quota import QuotaLimiter

BASE_URL = "https://api.justtcg.test/v1"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh in-memory database per test.

    StaticPool keeps one shared connection so every session sees the same
    in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Clock / quota
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock + monotonic counter that only move when told to (or slept on)."""

    def __init__(self, start: datetime):
        self.now = start
        self.mono = 1000.0
        self.sleeps: list[float] = []

    def clock(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.mono += seconds
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 14, 10, 0, 0))


@pytest.fixture
def limiter(fake_clock: FakeClock) -> QuotaLimiter:
    """No spacing, 100 calls/day."""
    return QuotaLimiter(
        min_interval=0,
        daily_limit=100,
        clock=fake_clock.clock,
        monotonic=fake_clock.monotonic,
        sleep=fake_clock.sleep,
    )


@pytest_asyncio.fixture
async def client(limiter: QuotaLimiter) -> AsyncGenerator[JustTCGClient, None]:
    """Opened JustTCG client pointed at BASE_URL; no retry backoff."""
    async with JustTCGClient(
        api_key="test-key",
        base_url=BASE_URL,
        limiter=limiter,
        max_retries=2,
        base_backoff=0,
        batch_limit=20,
    ) as justtcg:
        yield justtcg


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def set_payload(set_id: str, name: str | None = None, **extra: Any) -> dict[str, Any]:
    return {"id": set_id, "name": name or set_id.upper(), **extra}


def variant_payload(
    price: float | str | None,
    condition: str = "Near Mint",
    printing: str = "Normal",
    **extra: Any,
) -> dict[str, Any]:
    return {"condition": condition, "printing": printing, "price": price, **extra}


def card_payload(
    card_id: str,
    set_id: str = "op01",
    rarity: str | None = "R",
    price: float | str | None = 1.0,
    variants: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": card_id,
        "name": f"Card {card_id}",
        "set": set_id,
        "rarity": rarity,
        "number": card_id.upper(),
        "variants": variants if variants is not None else [variant_payload(price)],
        **extra,
    }


@pytest.fixture
def now() -> datetime:
    """Current timestamp for tests (timezone-aware UTC)."""
    return datetime.now(timezone.utc)


def usd(value: str) -> Decimal:
    return Decimal(value)
