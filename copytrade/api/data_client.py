"""Client for the Polymarket Data API (source trader holdings)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from copytrade.api.throttle import RateLimiter, retry_async
from copytrade.config import DATA_API_URL, DATA_RATE_LIMIT, HTTP_TIMEOUT
from copytrade.errors import ExchangeError
from copytrade.models import SourcePosition

logger = logging.getLogger(__name__)


class DataClient:
    """Fetch public position data from the Data API."""

    def __init__(self, limiter: Optional[RateLimiter] = None) -> None:
        self._limiter = limiter or RateLimiter(DATA_RATE_LIMIT, name="data")
        self._client = httpx.AsyncClient(
            base_url=DATA_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_positions(
        self,
        wallet: str,
        *,
        limit: int = 500,
        offset: int = 0,
    ) -> list[dict]:
        """GET /positions for one page.

        Errors are raised as ``ExchangeError``: the position monitor has to
        tell "no holdings" apart from "could not fetch".
        """
        params: dict = {
            "user": wallet,
            "limit": limit,
            "offset": offset,
            "sizeThreshold": 0,
            "sortBy": "CURRENT",
            "sortDirection": "DESC",
        }

        async def _fetch() -> list[dict]:
            await self._limiter.acquire()
            try:
                resp = await self._client.get("/positions", params=params)
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ExchangeError(
                    f"Positions request failed: HTTP {exc.response.status_code}"
                ) from exc
            except httpx.TransportError as exc:
                raise ExchangeError(f"Positions network error: {exc}") from exc
            data = resp.json()
            return data if isinstance(data, list) else []

        return await retry_async(_fetch, name="fetch_positions")

    async def get_user_positions(self, wallet: str, *, max_pages: int = 5) -> list[SourcePosition]:
        """All holdings with positive size for a wallet."""
        raw_positions: list[dict] = []
        offset = 0
        limit = 500

        for _ in range(max_pages):
            page = await self.fetch_positions(wallet, limit=limit, offset=offset)
            if not page:
                break
            raw_positions.extend(page)
            if len(page) < limit:
                break
            offset += limit

        positions = [self.parse_position(raw) for raw in raw_positions]
        return [p for p in positions if p is not None and p.shares > 0]

    @staticmethod
    def parse_position(raw: dict[str, Any]) -> Optional[SourcePosition]:
        """Convert a raw position object; None if it lacks identifiers."""
        condition_id = raw.get("conditionId")
        token_id = raw.get("asset")
        if not condition_id or not token_id:
            return None
        return SourcePosition(
            market_id=condition_id,
            token_id=token_id,
            outcome=raw.get("outcome") or "",
            shares=float(raw.get("size") or 0),
            avg_price=float(raw.get("avgPrice") or 0),
            current_value=float(raw.get("currentValue") or 0),
            title=raw.get("title") or "",
        )
