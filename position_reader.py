#!/usr/bin/env python3
"""
On-Chain Account Reader for Orca Whirlpools
============================================

Reads current Whirlpool, Position and TickArray account state through
getMultipleAccounts and decodes the raw Anchor account layouts.  The
result is a set of frozen snapshots the pure analysis stages consume.

Account layouts (byte offsets, after the 8-byte discriminator):
────────────────────────────────────────────────────────────────
Whirlpool (653 bytes)
  8 whirlpools_config · 40 bump · 41 tick_spacing u16 · 45 fee_rate u16
  49 liquidity u128 · 65 sqrt_price u128 · 81 tick_current_index i32
  101 token_mint_a · 133 token_vault_a · 165 fee_growth_global_a u128
  181 token_mint_b · 213 token_vault_b · 245 fee_growth_global_b u128
  261 reward_last_updated_timestamp u64
  269 reward_infos[3] × 128: mint · vault · authority ·
      emissions_per_second_x64 u128 · growth_global_x64 u128

Position (216 bytes)
  8 whirlpool · 40 position_mint · 72 liquidity u128
  88 tick_lower_index i32 · 92 tick_upper_index i32
  96 fee_growth_checkpoint_a u128 · 112 fee_owed_a u64
  120 fee_growth_checkpoint_b u128 · 136 fee_owed_b u64
  144 reward_infos[3] × 24: growth_inside_checkpoint u128 · amount_owed u64

TickArray (9988 bytes)
  8 start_tick_index i32 · 12 ticks[88] × 113:
      initialized bool · liquidity_net i128 · liquidity_gross u128 ·
      fee_growth_outside_a u128 · fee_growth_outside_b u128 ·
      reward_growths_outside [u128; 3]
  9956 whirlpool

Ref: https://github.com/orca-so/whirlpools/tree/main/programs/whirlpool/src/state
"""

import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from solders.pubkey import Pubkey

from orca_pnl.central_config import WHIRLPOOL_PROGRAM_ID
from orca_pnl.logger import link_address
from orca_pnl.models import (
    PositionRewardInfo,
    PositionState,
    TickState,
    WhirlpoolRewardInfo,
    WhirlpoolState,
)
from orca_pnl.rpc_helpers import (
    DISCRIMINATOR_BYTES,
    SolanaRpcClient,
    account_discriminator,
    read_bool,
    read_i32,
    read_i128,
    read_pubkey,
    read_u16,
    read_u64,
    read_u128,
    require_length,
)
from orca_pnl.token_registry import SOL_MINT, TokenRegistry
from whirlpool_math import NUM_REWARDS, TICK_ARRAY_SIZE, tick_array_start_index, tick_offset_in_array

logger = logging.getLogger(__name__)

WHIRLPOOL_PROGRAM = Pubkey.from_string(WHIRLPOOL_PROGRAM_ID)

WHIRLPOOL_ACCOUNT_SIZE = 653
POSITION_ACCOUNT_SIZE = 216
TICK_ARRAY_ACCOUNT_SIZE = 9988

_WHIRLPOOL_REWARDS_OFFSET = 269
_WHIRLPOOL_REWARD_SIZE = 128
_POSITION_REWARDS_OFFSET = 144
_POSITION_REWARD_SIZE = 24
_TICKS_OFFSET = 12
_TICK_SIZE = 113

POSITION_WHIRLPOOL_OFFSET = DISCRIMINATOR_BYTES  # for getProgramAccounts memcmp

TickKey = Tuple[Pubkey, int]  # (whirlpool, tick index)


# ── Layout Decoding ──────────────────────────────────────────────────────


def _check_discriminator(data: bytes, account_type: str) -> None:
    if data[:DISCRIMINATOR_BYTES] != account_discriminator(account_type):
        raise ValueError(f"Account is not a {account_type}")


def decode_whirlpool(address: Pubkey, data: bytes) -> WhirlpoolState:
    require_length(data, WHIRLPOOL_ACCOUNT_SIZE, "Whirlpool account")
    _check_discriminator(data, "Whirlpool")
    rewards = []
    for i in range(NUM_REWARDS):
        base = _WHIRLPOOL_REWARDS_OFFSET + i * _WHIRLPOOL_REWARD_SIZE
        rewards.append(WhirlpoolRewardInfo(
            mint=read_pubkey(data, base),
            vault=read_pubkey(data, base + 32),
            emissions_per_second_x64=read_u128(data, base + 96),
            growth_global_x64=read_u128(data, base + 112),
        ))
    return WhirlpoolState(
        address=address,
        tick_spacing=read_u16(data, 41),
        fee_rate=read_u16(data, 45),
        liquidity=read_u128(data, 49),
        sqrt_price=read_u128(data, 65),
        tick_current_index=read_i32(data, 81),
        token_mint_a=read_pubkey(data, 101),
        token_vault_a=read_pubkey(data, 133),
        fee_growth_global_a=read_u128(data, 165),
        token_mint_b=read_pubkey(data, 181),
        token_vault_b=read_pubkey(data, 213),
        fee_growth_global_b=read_u128(data, 245),
        reward_last_updated_timestamp=read_u64(data, 261),
        reward_infos=tuple(rewards),
    )


def decode_position(address: Pubkey, data: bytes) -> PositionState:
    require_length(data, POSITION_ACCOUNT_SIZE, "Position account")
    _check_discriminator(data, "Position")
    rewards = tuple(
        PositionRewardInfo(
            growth_inside_checkpoint=read_u128(data, _POSITION_REWARDS_OFFSET + i * _POSITION_REWARD_SIZE),
            amount_owed=read_u64(data, _POSITION_REWARDS_OFFSET + i * _POSITION_REWARD_SIZE + 16),
        )
        for i in range(NUM_REWARDS)
    )
    return PositionState(
        address=address,
        whirlpool=read_pubkey(data, 8),
        position_mint=read_pubkey(data, 40),
        liquidity=read_u128(data, 72),
        tick_lower_index=read_i32(data, 88),
        tick_upper_index=read_i32(data, 92),
        fee_growth_checkpoint_a=read_u128(data, 96),
        fee_owed_a=read_u64(data, 112),
        fee_growth_checkpoint_b=read_u128(data, 120),
        fee_owed_b=read_u64(data, 136),
        reward_infos=rewards,
    )


def decode_tick(data: bytes, offset: int) -> TickState:
    return TickState(
        initialized=read_bool(data, offset),
        liquidity_net=read_i128(data, offset + 1),
        liquidity_gross=read_u128(data, offset + 17),
        fee_growth_outside_a=read_u128(data, offset + 33),
        fee_growth_outside_b=read_u128(data, offset + 49),
        reward_growths_outside=tuple(read_u128(data, offset + 65 + 16 * i) for i in range(NUM_REWARDS)),
    )


def decode_tick_array(data: bytes) -> Tuple[int, List[TickState]]:
    """``(start_tick_index, ticks)`` of a TickArray account."""
    require_length(data, TICK_ARRAY_ACCOUNT_SIZE, "TickArray account")
    _check_discriminator(data, "TickArray")
    start = read_i32(data, 8)
    ticks = [decode_tick(data, _TICKS_OFFSET + i * _TICK_SIZE) for i in range(TICK_ARRAY_SIZE)]
    return start, ticks


# ── Program Derived Addresses ────────────────────────────────────────────


def position_address(position_mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"position", bytes(position_mint)], WHIRLPOOL_PROGRAM)[0]


def tick_array_address(whirlpool: Pubkey, start_index: int) -> Pubkey:
    seeds = [b"tick_array", bytes(whirlpool), str(start_index).encode()]
    return Pubkey.find_program_address(seeds, WHIRLPOOL_PROGRAM)[0]


# ── Reader ───────────────────────────────────────────────────────────────


class PositionReader:
    """
    Loads current account state for positions, pools, ticks and mints.

    Usage:
        async with SolanaRpcClient(rpc_url) as rpc:
            reader = PositionReader(rpc)
            positions = await reader.read_positions(addresses)
            pools = await reader.read_whirlpools(p.whirlpool for p in opens)
    """

    def __init__(self, rpc: SolanaRpcClient):
        self.rpc = rpc

    async def read_positions(self, addresses: Iterable[Pubkey]) -> Mapping[Pubkey, Optional[PositionState]]:
        """Position state per address; None when the account is gone (closed)."""
        accounts = await self.rpc.get_multiple_accounts(list(addresses))
        positions: Dict[Pubkey, Optional[PositionState]] = {}
        for address, data in accounts.items():
            if data is None:
                positions[address] = None
                continue
            try:
                positions[address] = decode_position(address, data)
            except ValueError as e:
                logger.warning("Position %s unreadable: %s", link_address(address), e)
                positions[address] = None
        return MappingProxyType(positions)

    async def read_whirlpools(self, addresses: Iterable[Pubkey]) -> Mapping[Pubkey, WhirlpoolState]:
        """Whirlpool state per address; missing or unreadable pools are left out."""
        accounts = await self.rpc.get_multiple_accounts(list(addresses))
        pools: Dict[Pubkey, WhirlpoolState] = {}
        for address, data in accounts.items():
            if data is None:
                logger.warning("Whirlpool %s not found", link_address(address))
                continue
            try:
                pools[address] = decode_whirlpool(address, data)
            except ValueError as e:
                logger.warning("Whirlpool %s unreadable: %s", link_address(address), e)
        return MappingProxyType(pools)

    async def read_ticks(self, positions: Iterable[PositionState],
                         pools: Mapping[Pubkey, WhirlpoolState]) -> Mapping[TickKey, TickState]:
        """Lower/upper tick state of every position whose pool is known."""
        wanted: Dict[Pubkey, Tuple[Pubkey, int, int]] = {}  # array address → (pool, start, spacing)
        ticks_needed: List[TickKey] = []
        for position in positions:
            pool = pools.get(position.whirlpool)
            if pool is None:
                continue
            for tick in (position.tick_lower_index, position.tick_upper_index):
                start = tick_array_start_index(tick, pool.tick_spacing)
                wanted[tick_array_address(pool.address, start)] = (pool.address, start, pool.tick_spacing)
                ticks_needed.append((pool.address, tick))

        accounts = await self.rpc.get_multiple_accounts(list(wanted))
        arrays: Dict[Tuple[Pubkey, int], List[TickState]] = {}
        for address, data in accounts.items():
            if data is None:
                continue
            pool_address, start, _ = wanted[address]
            try:
                _, ticks = decode_tick_array(data)
            except ValueError as e:
                logger.debug("TickArray %s unreadable: %s", link_address(address), e)
                continue
            arrays[(pool_address, start)] = ticks

        result: Dict[TickKey, TickState] = {}
        for pool_address, tick in ticks_needed:
            spacing = pools[pool_address].tick_spacing
            start = tick_array_start_index(tick, spacing)
            ticks = arrays.get((pool_address, start))
            if ticks is None:
                continue
            result[(pool_address, tick)] = ticks[tick_offset_in_array(tick, start, spacing)]
        return MappingProxyType(result)

    async def read_tokens(self, mints: Iterable[Pubkey]) -> TokenRegistry:
        """Decimals of every mint (plus the native mint)."""
        wanted = [mint for mint in dict.fromkeys(mints) if mint != SOL_MINT]
        accounts = await self.rpc.get_multiple_accounts(wanted)
        for mint, data in accounts.items():
            if data is None:
                logger.warning("Mint %s not found", link_address(mint))
        return TokenRegistry.from_mint_accounts(accounts)
