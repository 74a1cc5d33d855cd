#!/usr/bin/env python3
"""
Position Finder — Liquidity Provider Discovery
==============================================

Finds wallets providing liquidity on Orca Whirlpools, optionally in a
single pool, so they can be fed to ``analyze``.

Flow:
  1. getProgramAccounts(Whirlpool program)   all Position accounts
       filters: dataSize 216 · memcmp(offset 8 = whirlpool) when a pool is given
  2. read the pools, keep in-range positions (unless out-of-range allowed)
  3. value each position at current prices (zero-slippage withdrawal)
     and keep those within [min, max)
  4. owner of a position = the single holder of its position mint:
       getProgramAccounts(Token program) dataSize 165 · memcmp(offset 0 = mint)
       with a non-zero balance
  5. wallet value = largest position value per owner, capped at ``count``
     owners (largest positions first)

SPL Token account layout (165 bytes):
  0 mint · 32 owner · 64 amount u64
"""

import logging
import time
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from solders.pubkey import Pubkey

from orca_pnl.central_config import TOKEN_PROGRAM_ID, WHIRLPOOL_PROGRAM_ID, config
from orca_pnl.errors import MissingPriceError, MissingTokenError
from orca_pnl.logger import link_address
from orca_pnl.models import PositionState, WhirlpoolState
from orca_pnl.rpc_helpers import (
    SolanaRpcClient,
    TaskPool,
    data_size_filter,
    memcmp_filter,
    read_pubkey,
    read_u64,
)
from orca_pnl.token_registry import TokenRegistry
from position_reader import (
    POSITION_ACCOUNT_SIZE,
    POSITION_WHIRLPOOL_OFFSET,
    PositionReader,
    decode_position,
)
from price_fetcher import PriceBook, PriceFetcher
from whirlpool_math import WhirlpoolMath

logger = logging.getLogger(__name__)

WHIRLPOOL_PROGRAM = Pubkey.from_string(WHIRLPOOL_PROGRAM_ID)
TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)

TOKEN_ACCOUNT_SIZE = 165
TOKEN_ACCOUNT_MINT_OFFSET = 0
TOKEN_ACCOUNT_OWNER_OFFSET = 32
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64


# ── Pure Helpers ─────────────────────────────────────────────────────────


def position_value(position: PositionState, pool: WhirlpoolState, tokens: TokenRegistry,
                   prices: PriceBook) -> Decimal:
    """Current USD value of the liquidity in a position."""
    amount_a, amount_b = WhirlpoolMath.amounts_for_liquidity(
        position.liquidity, pool.sqrt_price, pool.tick_current_index,
        position.tick_lower_index, position.tick_upper_index,
    )
    return (
        tokens.to_display(pool.token_mint_a, amount_a) * prices.current_price(pool.token_mint_a)
        + tokens.to_display(pool.token_mint_b, amount_b) * prices.current_price(pool.token_mint_b)
    )


def single_holder(token_accounts: Iterable[Tuple[Pubkey, bytes]]) -> Optional[Pubkey]:
    """Owner of the only token account with a non-zero balance, else None."""
    owners = {
        read_pubkey(data, TOKEN_ACCOUNT_OWNER_OFFSET)
        for _, data in token_accounts
        if data is not None and read_u64(data, TOKEN_ACCOUNT_AMOUNT_OFFSET) > 0
    }
    return owners.pop() if len(owners) == 1 else None


def wallet_values(valued: Iterable[Tuple[Pubkey, Decimal]]) -> Dict[Pubkey, Decimal]:
    """Largest position value per owner."""
    values: Dict[Pubkey, Decimal] = {}
    for owner, value in valued:
        if owner not in values or value > values[owner]:
            values[owner] = value
    return values


def in_value_range(value: Decimal, minimum: Optional[Decimal], maximum: Optional[Decimal]) -> bool:
    if minimum is not None and value < minimum:
        return False
    if maximum is not None and value >= maximum:
        return False
    return True


# ── Finder ───────────────────────────────────────────────────────────────


class PositionFinder:
    """
    Usage:
        finder = PositionFinder(rpc, price_fetcher)
        values = await finder.find(whirlpool=pool_address, count=100, minimum=Decimal(1000))
    """

    def __init__(self, rpc: SolanaRpcClient, price_fetcher: PriceFetcher,
                 pool: Optional[TaskPool] = None):
        self.rpc = rpc
        self.reader = PositionReader(rpc)
        self.price_fetcher = price_fetcher
        self.pool = pool or TaskPool()

    async def all_positions(self, whirlpool: Optional[Pubkey] = None) -> List[PositionState]:
        filters = [data_size_filter(POSITION_ACCOUNT_SIZE)]
        if whirlpool is not None:
            filters.append(memcmp_filter(POSITION_WHIRLPOOL_OFFSET, whirlpool))
        accounts = await self.rpc.get_program_accounts(WHIRLPOOL_PROGRAM, filters)
        positions = []
        for address, data in accounts:
            try:
                positions.append(decode_position(address, data))
            except ValueError:
                continue
        logger.info("Found %d positions", len(positions))
        return positions

    async def owner_of(self, position_mint: Pubkey) -> Optional[Pubkey]:
        accounts = await self.rpc.get_program_accounts(
            TOKEN_PROGRAM,
            [data_size_filter(TOKEN_ACCOUNT_SIZE), memcmp_filter(TOKEN_ACCOUNT_MINT_OFFSET, position_mint)],
        )
        return single_holder(accounts)

    async def value_positions(self, positions: List[PositionState],
                              pools: Mapping[Pubkey, WhirlpoolState],
                              now: int) -> List[Tuple[PositionState, Decimal]]:
        mints = {m for pool in pools.values() for m in (pool.token_mint_a, pool.token_mint_b)}
        tokens = await self.reader.read_tokens(mints)
        prices = await self.price_fetcher.fetch(mints, [now], now)

        valued = []
        for position in positions:
            pool = pools.get(position.whirlpool)
            if pool is None:
                continue
            try:
                valued.append((position, position_value(position, pool, tokens, prices)))
            except (MissingPriceError, MissingTokenError) as e:
                logger.debug("Position %s not valued: %s", link_address(position.address), e)
        return valued

    async def find(self, whirlpool: Optional[Pubkey] = None, include_out_of_range: bool = False,
                   count: int = 100, minimum: Optional[Decimal] = None,
                   maximum: Optional[Decimal] = None, now: Optional[int] = None) -> Dict[Pubkey, Decimal]:
        """``{owner: largest position value}`` for up to ``count`` owners."""
        now = int(time.time()) if now is None else now
        positions = await self.all_positions(whirlpool)
        pools = await self.reader.read_whirlpools({p.whirlpool for p in positions})

        if not include_out_of_range:
            positions = [
                p for p in positions
                if p.whirlpool in pools and WhirlpoolMath.is_in_range(
                    pools[p.whirlpool].tick_current_index, p.tick_lower_index, p.tick_upper_index
                )
            ]

        valued = [
            (position, value)
            for position, value in await self.value_positions(positions, pools, now)
            if in_value_range(value, minimum, maximum)
        ]
        valued.sort(key=lambda item: item[1], reverse=True)
        logger.info("%d positions match the filters", len(valued))

        owners: List[Tuple[Pubkey, Decimal]] = []
        seen: set = set()
        step = config.tasks.CONCURRENCY
        for start in range(0, len(valued), step):
            batch = valued[start:start + step]
            found = await self.pool.map_settled(
                self.owner_of, [position.position_mint for position, _ in batch], label="Owner lookup"
            )
            for position, value in batch:
                owner = found.get(position.position_mint)
                if owner is None:
                    continue
                owners.append((owner, value))
                seen.add(owner)
            if len(seen) >= count:
                break

        values = wallet_values(owners)
        # Largest first, capped
        return dict(sorted(values.items(), key=lambda item: item[1], reverse=True)[:count])
