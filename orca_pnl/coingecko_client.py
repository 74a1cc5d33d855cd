#!/usr/bin/env python3
"""
CoinGecko Client — USD price history for Solana mints
======================================================
Based on the official documentation: https://docs.coingecko.com/reference/introduction

Endpoints used:
  /coins/list?include_platform=true          → Solana mint → coin id
  /coins/{id}/market_chart/range              → [[ms, price], …] in USD

A pro API key (``COINGECKO_PRO_API_KEY``) switches to the pro base URL and
is passed as the ``x_cg_pro_api_key`` query parameter.
"""

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import httpx
from solders.pubkey import Pubkey

from orca_pnl.central_config import config

logger = logging.getLogger(__name__)


# ── Rate Limiter (CWE-770 mitigation) ────────────────────────────────────


class _RateLimiter:
    """Sliding-window rate limiter to respect API limits.

    CWE-770: Allocation of Resources Without Limits or Throttling.

    The free CoinGecko tier answers 429 well before its nominal limit when
    bursts arrive; staying under it keeps a long history fetch alive.
    """

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available (one caller at a time)."""
        async with self._lock:
            while True:
                now = time.monotonic()
                # Purge timestamps outside the current window
                self._timestamps = [t for t in self._timestamps if now - t < self._period]
                if len(self._timestamps) < self._max:
                    break
                # Wait until the oldest request expires, then re-check
                await asyncio.sleep(self._period - (now - self._timestamps[0]) + 0.01)
            self._timestamps.append(time.monotonic())


class CoinGeckoClient:
    """CoinGecko API client (public or pro tier)."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key
        self.pro = bool(api_key)
        self.timeout = config.coingecko.TIMEOUT_SECONDS
        self.session = httpx.AsyncClient(timeout=self.timeout, verify=True)
        per_minute = (
            config.coingecko.PRO_REQUESTS_PER_MINUTE
            if self.pro
            else config.coingecko.FREE_REQUESTS_PER_MINUTE
        )
        self._limiter = _RateLimiter(max_requests=per_minute, period_seconds=60)

    async def close(self) -> None:
        await self.session.aclose()

    async def __aenter__(self) -> "CoinGeckoClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get(self, url: str, params: Dict[str, Any]) -> Any:
        if self.pro:
            params = {**params, config.coingecko.PRO_KEY_PARAM: self.api_key}
        await self._limiter.acquire()
        response = await self.session.get(url, params=params)
        if response.status_code == 429:
            logger.warning("CoinGecko rate limit reached (HTTP 429)")
        response.raise_for_status()
        return response.json()

    async def fetch_coin_ids(self) -> Mapping[Pubkey, str]:
        """Read-only map of every Solana mint listed on CoinGecko to its coin id.

        One /coins/list download; call it once before fanning out.
        """
        coins = await self._get(
            config.coingecko.get_coins_list_url(self.pro),
            {"include_platform": "true"},
        )
        coin_ids = parse_coin_ids(coins)
        logger.debug("CoinGecko lists %d Solana mints", len(coin_ids))
        return MappingProxyType(coin_ids)

    async def get_market_chart_range(self, coin_id: str, start: int, end: int) -> List[List[float]]:
        """``[[timestamp_ms, usd_price], …]`` between two unix timestamps."""
        data = await self._get(
            config.coingecko.get_market_chart_range_url(coin_id, self.pro),
            {"vs_currency": config.coingecko.VS_CURRENCY, "from": start, "to": end},
        )
        return data.get("prices", [])


def parse_coin_ids(coins: List[Dict[str, Any]]) -> Dict[Pubkey, str]:
    """Extract ``{solana mint: coin id}`` from a /coins/list response."""
    platform = config.coingecko.PLATFORM
    coin_ids: Dict[Pubkey, str] = {}
    for coin in coins:
        address = (coin.get("platforms") or {}).get(platform)
        if not address:
            continue
        try:
            mint = Pubkey.from_string(address)
        except ValueError:
            continue  # malformed platform address
        coin_ids.setdefault(mint, coin["id"])
    return coin_ids
