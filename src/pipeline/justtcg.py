"""
OPTCG Market — JustTCG API Client

Fetches games, sets and cards (with embedded variant price snapshots) from
the JustTCG API. Every HTTP attempt, retries included, passes through the
QuotaLimiter, so the daily budget reflects requests actually sent.

This module handles only fetching and parsing. Persistence lives in
pipeline/storage.py, orchestration in pipeline/orchestrator.py.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from src.config import settings
from src.models.variant import DEFAULT_CONDITION, DEFAULT_PRINTING
from src.pipeline.errors import ConfigurationError, InvalidBatchSize, UpstreamRequestFailed
from src.pipeline.fields import (
    CARD_FIELD_ALIASES,
    SET_FIELD_ALIASES,
    VARIANT_FIELD_ALIASES,
    first_present,
    resolve_decimal,
    resolve_image_url,
    resolve_text,
)
from src.pipeline.quota import QuotaLimiter

logger = structlog.get_logger(__name__)

# Ask card endpoints to embed statistics alongside the snapshot
CARD_QUERY_PARAMS: dict[str, Any] = {
    "include_price_history": "true",
    "include_statistics": "7d,30d,90d",
    "priceHistoryDuration": "90d",
}

# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class JustTCGGame(BaseModel):
    """A game supported by JustTCG."""

    id: str
    name: str = ""

    @model_validator(mode="before")
    @classmethod
    def coerce_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" in data:
            return {**data, "id": _as_id(data["id"])}
        return data


class JustTCGSet(BaseModel):
    """A set as returned by GET /sets."""

    id: str
    name: str = ""
    release_date: str | None = None
    set_value_usd: Decimal | None = None

    @model_validator(mode="before")
    @classmethod
    def resolve_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        release = first_present(data, SET_FIELD_ALIASES["release_date"])
        return {
            "id": _as_id(data.get("id")),
            "name": data.get("name") or "",
            "release_date": None if release is None else str(release),
            "set_value_usd": resolve_decimal(data, "set_value_usd", SET_FIELD_ALIASES),
        }


class JustTCGVariant(BaseModel):
    """
    One condition/printing price snapshot embedded in a card payload.

    Metric fields resolve through VARIANT_FIELD_ALIASES; a metric with none
    of its aliases present stays None.
    """

    condition: str | None = None
    printing: str | None = None
    price: Decimal | None = None
    avg_7d: Decimal | None = None
    avg_30d: Decimal | None = None
    avg_90d: Decimal | None = None
    change_24h: Decimal | None = None
    change_7d: Decimal | None = None
    change_30d: Decimal | None = None

    @model_validator(mode="before")
    @classmethod
    def resolve_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        resolved: dict[str, Any] = {
            "condition": data.get("condition") or None,
            "printing": data.get("printing") or None,
        }
        for metric in VARIANT_FIELD_ALIASES:
            resolved[metric] = resolve_decimal(data, metric)
        return resolved

    @property
    def condition_label(self) -> str:
        return self.condition or DEFAULT_CONDITION

    @property
    def printing_label(self) -> str:
        return self.printing or DEFAULT_PRINTING


class JustTCGCard(BaseModel):
    """A card with its embedded variants."""

    id: str
    name: str = ""
    set_id: str | None = None
    rarity: str | None = None
    number: str | None = None
    tcgplayer_id: str | None = None
    image_url: str | None = None
    variants: list[JustTCGVariant] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def resolve_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        variants = data.get("variants")
        set_ref = data.get("set_id") or data.get("set")
        if isinstance(set_ref, dict):
            set_ref = set_ref.get("id")
        return {
            "id": _as_id(data.get("id")),
            "name": data.get("name") or "",
            "set_id": None if set_ref is None else str(set_ref),
            "rarity": data.get("rarity") or None,
            "number": resolve_text(data, "number", CARD_FIELD_ALIASES),
            "tcgplayer_id": resolve_text(data, "tcgplayer_id", CARD_FIELD_ALIASES),
            "image_url": resolve_image_url(data),
            "variants": variants if isinstance(variants, list) else [],
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_id(value: Any) -> str | None:
    # Some endpoints return numeric ids
    return None if value is None else str(value)


def extract_data(payload: Any) -> list[Any]:
    """Unwrap the list out of JustTCG's (inconsistent) response envelopes."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "sets", "cards"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def _parse_list(model: type[BaseModel], items: list[Any], kind: str) -> list[Any]:
    results = []
    for item in items:
        try:
            results.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(
                "justtcg_parse_error",
                kind=kind,
                error=str(e),
                item=str(item)[:100],
            )
    return results


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class JustTCGClient:
    """
    Async client for the JustTCG API.

    Usage:
        limiter = QuotaLimiter()
        async with JustTCGClient(limiter=limiter) as client:
            sets = await client.get_sets()
            cards = await client.get_set_cards(sets[0].id)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        limiter: QuotaLimiter | None = None,
        max_retries: int | None = None,
        base_backoff: float | None = None,
        batch_limit: int | None = None,
    ):
        self._api_key = api_key or settings.JUSTTCG_API_KEY
        self._base_url = base_url or settings.JUSTTCG_BASE_URL
        self._limiter = limiter or QuotaLimiter()
        self._max_retries = max_retries if max_retries is not None else settings.JUSTTCG_MAX_RETRIES
        self._base_backoff = (
            base_backoff if base_backoff is not None else settings.JUSTTCG_BASE_BACKOFF_SECONDS
        )
        self._batch_limit = batch_limit or settings.JUSTTCG_BATCH_LIMIT
        self._client: httpx.AsyncClient | None = None

    @property
    def limiter(self) -> QuotaLimiter:
        return self._limiter

    @property
    def batch_limit(self) -> int:
        return self._batch_limit

    async def __aenter__(self) -> JustTCGClient:
        if not self._api_key:
            raise ConfigurationError("JUSTTCG_API_KEY is not configured")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "X-Api-Key": self._api_key,
                "Content-Type": "application/json",
            },
            timeout=settings.JUSTTCG_TIMEOUT_SECONDS,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """
        Make an API request with retry logic and exponential backoff.

        429, 5xx and transport errors are retried; other 4xx are not.
        QuotaExceeded from the limiter propagates untouched.
        """
        assert self._client is not None, "Client not initialized. Use 'async with'."
        client = self._client

        last_error: Exception | None = None
        last_status: int | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await self._limiter.call(
                    lambda: client.request(method, path, params=params, json=json)
                )

                if response.status_code == 429:
                    last_status = 429
                    wait_time = self._base_backoff * (2 ** attempt)
                    logger.warning(
                        "justtcg_rate_limited",
                        attempt=attempt + 1,
                        wait_seconds=wait_time,
                        path=path,
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(wait_time)
                    continue

                response.raise_for_status()
                try:
                    return response.json()
                except ValueError as e:
                    logger.error(
                        "justtcg_invalid_json",
                        status_code=response.status_code,
                        path=path,
                    )
                    raise UpstreamRequestFailed(
                        f"JustTCG {method} {path} returned invalid JSON",
                        status_code=response.status_code,
                        path=path,
                    ) from e

            except httpx.HTTPStatusError as e:
                last_error = e
                last_status = e.response.status_code
                logger.error(
                    "justtcg_http_error",
                    status_code=e.response.status_code,
                    attempt=attempt + 1,
                    path=path,
                )
                if e.response.status_code >= 500:
                    if attempt < self._max_retries:
                        await asyncio.sleep(self._base_backoff * (2 ** attempt))
                    continue
                raise UpstreamRequestFailed(
                    f"JustTCG {method} {path} returned {e.response.status_code}",
                    status_code=e.response.status_code,
                    path=path,
                ) from e

            except httpx.RequestError as e:
                last_error = e
                logger.error(
                    "justtcg_request_error",
                    error=str(e),
                    attempt=attempt + 1,
                    path=path,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._base_backoff * (2 ** attempt))
                continue

        raise UpstreamRequestFailed(
            f"JustTCG API request failed after {self._max_retries + 1} attempts",
            status_code=last_status,
            path=path,
        ) from last_error

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def get_games(self) -> list[JustTCGGame]:
        data = await self._request("GET", "/games")
        return _parse_list(JustTCGGame, extract_data(data), "game")

    async def get_sets(self, game_id: str | None = None) -> list[JustTCGSet]:
        """
        Fetch all sets for a game.

        Args:
            game_id: JustTCG game id (default: settings.JUSTTCG_GAME_ID).
        """
        game = game_id or settings.JUSTTCG_GAME_ID
        logger.info("justtcg_fetch_sets", game_id=game)

        data = await self._request("GET", "/sets", params={"game": game})
        sets = _parse_list(JustTCGSet, extract_data(data), "set")

        logger.info("justtcg_fetch_sets_complete", game_id=game, results_count=len(sets))
        return sets

    async def get_set_cards(self, set_id: str) -> list[JustTCGCard]:
        """
        Fetch every card of a set, with embedded variant price snapshots.

        Args:
            set_id: JustTCG set id.
        """
        logger.info("justtcg_fetch_set_cards", set_id=set_id)

        data = await self._request(
            "GET", "/cards", params={"set": set_id, **CARD_QUERY_PARAMS}
        )
        cards = _parse_list(JustTCGCard, extract_data(data), "card")

        logger.info("justtcg_fetch_set_cards_complete", set_id=set_id, results_count=len(cards))
        return cards

    async def get_cards_by_ids(self, card_ids: list[str]) -> list[JustTCGCard]:
        """
        Batch-fetch cards by id (POST /cards).

        Raises:
            InvalidBatchSize: more than batch_limit ids. Nothing is sent and
                no quota is consumed; chunking is the caller's job.
        """
        if len(card_ids) > self._batch_limit:
            raise InvalidBatchSize(len(card_ids), self._batch_limit)
        if not card_ids:
            return []

        logger.info("justtcg_fetch_batch", batch_size=len(card_ids))

        data = await self._request(
            "POST", "/cards", params=CARD_QUERY_PARAMS, json={"ids": list(card_ids)}
        )
        cards = _parse_list(JustTCGCard, extract_data(data), "card")

        logger.info(
            "justtcg_fetch_batch_complete",
            batch_size=len(card_ids),
            results_count=len(cards),
        )
        return cards
