"""
OPTCG Market — Variant Metric Recalculation

Recomputes stored avg_7d/30d/90d and change_24h/7d/30d for every priced
variant from its own price history, replacing the upstream-supplied
statistics with values derived from observations we recorded.

Variants with no history keep whatever the last sync wrote.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.engine.history import moving_averages, price_changes
from src.pipeline.storage import SyncStorage

logger = structlog.get_logger(__name__)


async def recalculate_variant_metrics(session: AsyncSession, now: datetime | None = None) -> int:
    """
    Recalculate metrics for every variant with a current price and history.

    Returns:
        Number of variants updated.
    """
    now = now or datetime.now(timezone.utc)
    storage = SyncStorage(session)

    variants = await storage.priced_variants()
    updated = 0
    for variant in variants:
        history = await storage.variant_history(variant.id)
        if not history:
            continue

        averages = moving_averages(history, now)
        changes = price_changes(variant.current_price, history, now)
        await storage.update_variant_metrics(variant.id, averages, changes)
        updated += 1

    await session.commit()
    logger.info("variant_metrics_recalculated", variants=len(variants), updated=updated)
    return updated
