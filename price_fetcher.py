#!/usr/bin/env python3
"""
Historical Price Fetcher — Hourly USD Prices per Mint
=====================================================

Builds the read-only ``PriceBook`` the accounting pass prices events
against.  Everything network-bound happens here, before the pure
stages run; the ledger only ever sees a frozen snapshot.

Data source: CoinGecko ``/coins/{id}/market_chart/range``
  • Ranges up to 90 days back return hourly points; older history is
    fetched in one window (daily points) ending at the 90-day cutoff.
  • Recent history is requested in windows of at most 60 days.
  • Points are keyed by the nearest whole hour.  Hours with no point are
    forward-filled, then any leading gap is backward-filled, across the
    whole requested span.

A mint CoinGecko does not list, or whose fetch fails, is logged and
left out of the book; positions touching it later fail with
``MissingPriceError`` and are skipped individually.
"""

import logging
import time
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from solders.pubkey import Pubkey

from orca_pnl.central_config import config
from orca_pnl.coingecko_client import CoinGeckoClient
from orca_pnl.errors import MissingPriceError
from orca_pnl.logger import link_address
from orca_pnl.rpc_helpers import TaskPool

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR
HALF_DAY = 12 * HOUR


# ── Time Helpers ─────────────────────────────────────────────────────────


def round_to_hour(timestamp: int) -> int:
    """Nearest whole hour (half-hour rounds up).

    >>> round_to_hour(5399), round_to_hour(5400)
    (3600, 7200)
    """
    return (int(timestamp) + HOUR // 2) // HOUR * HOUR


def round_to_day(timestamp: int) -> int:
    return (int(timestamp) + DAY // 2) // DAY * DAY


def requested_span(timestamps: Iterable[int]) -> Tuple[int, int]:
    """Day-aligned span covering every timestamp with 12h of margin."""
    timestamps = list(timestamps)
    if not timestamps:
        raise ValueError("No timestamps to price")
    return (
        round_to_day(min(timestamps) - HALF_DAY),
        round_to_day(max(timestamps) + HALF_DAY),
    )


def plan_ranges(start: int, end: int, now: int) -> List[Tuple[int, int]]:
    """Split ``[start, end]`` into CoinGecko-friendly request windows."""
    cutoff = now - config.coingecko.HOURLY_HISTORY_DAYS * DAY
    max_window = config.coingecko.MAX_RANGE_DAYS * DAY
    ranges = []
    cursor = start
    while cursor < end:
        if cursor < cutoff:
            window_end = min(end, cutoff)
        else:
            window_end = min(end, cursor + max_window)
        ranges.append((cursor, window_end))
        cursor = window_end
    return ranges


# ── Series Handling ──────────────────────────────────────────────────────


def bucket_points(points: Iterable[Iterable[float]]) -> Dict[int, Decimal]:
    """``[[ms, price], …]`` → ``{hour: price}`` (later points win a bucket)."""
    buckets: Dict[int, Decimal] = {}
    for ms, price in points:
        if price is None:
            continue
        buckets[round_to_hour(int(ms) // 1000)] = Decimal(str(price))
    return buckets


def fill_series(buckets: Mapping[int, Decimal], start: int, end: int) -> Dict[int, Decimal]:
    """Hourly series over ``[start, end]``: forward-fill, then backward-fill."""
    if not buckets:
        return {}
    hours = range(round_to_hour(start), round_to_hour(end) + HOUR, HOUR)
    series: Dict[int, Decimal] = {}
    earlier = [hour for hour in buckets if hour < hours.start]
    last: Optional[Decimal] = buckets[max(earlier)] if earlier else None
    for hour in hours:
        if hour in buckets:
            last = buckets[hour]
        if last is not None:
            series[hour] = last

    first = next(iter(series.values()), None)
    if first is None:
        # Every point lies after the span: back-fill from the earliest one
        first = buckets[min(buckets)]
    for hour in hours:
        if hour in series:
            break
        series[hour] = first
    return dict(sorted(series.items()))


# ── Price Book ───────────────────────────────────────────────────────────


class PriceBook:
    """Immutable ``mint → hour → USD price`` snapshot.

    ``price_at`` rounds the requested time to the nearest hour;
    ``current_price`` is the price at ``now``.  Both raise
    ``MissingPriceError`` rather than substituting anything.
    """

    def __init__(self, series: Mapping[Pubkey, Mapping[int, Decimal]], now: int):
        self._series = MappingProxyType(
            {mint: MappingProxyType(dict(prices)) for mint, prices in series.items()}
        )
        self.now = int(now)

    def __contains__(self, mint: Pubkey) -> bool:
        return mint in self._series

    def mints(self):
        return self._series.keys()

    def price_at(self, mint: Pubkey, block_time: int) -> Decimal:
        prices = self._series.get(mint)
        if prices is None:
            raise MissingPriceError(mint, block_time)
        price = prices.get(round_to_hour(block_time))
        if price is None:
            raise MissingPriceError(mint, block_time)
        return price

    def current_price(self, mint: Pubkey) -> Decimal:
        try:
            return self.price_at(mint, self.now)
        except MissingPriceError:
            raise MissingPriceError(mint) from None


# ── Fetcher ──────────────────────────────────────────────────────────────


class PriceFetcher:
    """
    Fetches hourly USD price series for many mints concurrently.

    The mint → coin id map is a read-only snapshot taken once, before any
    per-mint task starts.

    Usage:
        async with CoinGeckoClient(api_key) as client:
            coin_ids = await client.fetch_coin_ids()
            book = await PriceFetcher(client, coin_ids=coin_ids).fetch(mints, timestamps)
    """

    def __init__(self, client: CoinGeckoClient, pool: Optional[TaskPool] = None,
                 coin_ids: Optional[Mapping[Pubkey, str]] = None):
        self.client = client
        self.pool = pool or TaskPool()
        self.coin_ids = coin_ids

    async def load_coin_ids(self) -> Mapping[Pubkey, str]:
        if self.coin_ids is None:
            self.coin_ids = await self.client.fetch_coin_ids()
        return self.coin_ids

    async def fetch(self, mints: Iterable[Pubkey], timestamps: Iterable[int],
                    now: Optional[int] = None) -> PriceBook:
        now = int(time.time()) if now is None else int(now)
        start, end = requested_span([*timestamps, now])
        mints = list(dict.fromkeys(mints))
        coin_ids = await self.load_coin_ids()

        async def _fetch_mint(mint: Pubkey) -> Dict[int, Decimal]:
            coin_id = coin_ids.get(mint)
            if coin_id is None:
                raise LookupError("not listed on CoinGecko")
            buckets: Dict[int, Decimal] = {}
            for window_start, window_end in plan_ranges(start, end, now):
                points = await self.client.get_market_chart_range(coin_id, window_start, window_end)
                buckets.update(bucket_points(points))
            series = fill_series(buckets, start, end)
            if not series:
                raise LookupError(f"no price points for {coin_id}")
            return series

        async def _settled(mint: Pubkey) -> Optional[Dict[int, Decimal]]:
            try:
                return await _fetch_mint(mint)
            except LookupError as e:
                logger.warning("No prices for %s: %s", link_address(mint), e)
                return None

        fetched = await self.pool.map_settled(_settled, mints, label="Price fetch")
        series = {mint: prices for mint, prices in fetched.items() if prices}
        logger.info("Fetched prices for %d of %d tokens", len(series), len(mints))
        return PriceBook(series, now)
