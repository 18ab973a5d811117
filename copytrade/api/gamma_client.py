"""Client for the Polymarket Gamma API (market metadata)."""

from __future__ import annotations

import json
import logging
import time
from typing import Optional

import httpx

from copytrade.api.throttle import RateLimiter
from copytrade.config import GAMMA_API_URL, GAMMA_RATE_LIMIT, HTTP_TIMEOUT, MARKET_CACHE_TTL
from copytrade.models import MarketInfo

logger = logging.getLogger(__name__)


class GammaClient:
    """Fetch market metadata with a small in-memory TTL cache."""

    def __init__(
        self,
        limiter: Optional[RateLimiter] = None,
        cache_ttl: float = MARKET_CACHE_TTL,
    ) -> None:
        self._limiter = limiter or RateLimiter(GAMMA_RATE_LIMIT, name="gamma")
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, MarketInfo]] = {}
        self._client = httpx.AsyncClient(
            base_url=GAMMA_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_market(self, condition_id: str) -> Optional[MarketInfo]:
        """GET /markets by condition id. None when unknown or unreachable."""
        cached = self._cache.get(condition_id)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]

        await self._limiter.acquire()
        try:
            resp = await self._client.get("/markets", params={"condition_ids": condition_id})
            resp.raise_for_status()
            data = resp.json()
        except Exception:
            logger.warning("fetch_market_error", extra={"condition_id": condition_id}, exc_info=True)
            return None

        if not isinstance(data, list) or not data:
            return None

        market = self.parse_market(data[0], condition_id)
        self._cache[condition_id] = (time.monotonic() + self._cache_ttl, market)
        return market

    def clear_cache(self) -> None:
        self._cache.clear()

    @classmethod
    def parse_market(cls, raw: dict, condition_id: str = "") -> MarketInfo:
        return MarketInfo(
            condition_id=raw.get("conditionId") or condition_id,
            question=raw.get("question", ""),
            outcomes=[str(o) for o in cls._parse_json_field(raw.get("outcomes", "[]"))],
            token_ids=[str(t) for t in cls._parse_json_field(raw.get("clobTokenIds", "[]"))],
        )

    @staticmethod
    def _parse_json_field(raw: str | list) -> list:
        """Handle double-encoded JSON fields (outcomes, clobTokenIds)."""
        if isinstance(raw, list):
            return raw
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass
        return []
