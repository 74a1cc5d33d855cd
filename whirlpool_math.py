#!/usr/bin/env python3
"""
Whirlpool Math Engine
=====================

Orca Whirlpool concentrated-liquidity math used for the live quote of an
open position: token amounts at the current price, collectible fees and
collectible rewards.  Integer arithmetic throughout, mirroring the
on-chain program so quotes match what a withdrawal would actually pay.

FORMULA SOURCES:
────────────────
1. Orca Whirlpools — programs/whirlpool/src/math
   https://github.com/orca-so/whirlpools
   - sqrt_price is Q64.64:  sqrt_price = √(1.0001^tick) · 2^64
   - amount_a = L · (√Pu − √P) · 2^64 / (√P · √Pu)
   - amount_b = L · (√P − √Pl) / 2^64

2. Fee / reward growth (same scheme as Uniswap V3 Core Pool.sol)
   - growth_inside = global − below(lower) − above(upper)   (mod 2^128)
   - owed = (growth_inside − checkpoint) · L >> 64

3. Reward emissions (whirlpool::manager::whirlpool_manager)
   - growth_global += emissions_per_second_x64 · Δt / L   (when L > 0)
"""

from decimal import Decimal, localcontext
from typing import Sequence, Tuple

from orca_pnl.models import PositionState, TickState, WhirlpoolState
from orca_pnl.rpc_helpers import Q64, U128

# ── Named Constants ──────────────────────────────────────────────────────

MIN_TICK_INDEX = -443636
MAX_TICK_INDEX = 443636
TICK_ARRAY_SIZE = 88  # ticks per TickArray account
NUM_REWARDS = 3
_PRECISION = 60  # decimal digits for tick → sqrt price


# ── Core Math ────────────────────────────────────────────────────────────


class WhirlpoolMath:
    """
    Pure functions implementing Whirlpool tick and liquidity math.
    """

    @staticmethod
    def tick_to_sqrt_price_x64(tick: int) -> int:
        """
        Convert a tick index to a Q64.64 sqrt price.

        Formula: sqrt_price = √(1.0001^tick) · 2^64

        Raises ValueError outside the Whirlpool tick range.
        """
        if not MIN_TICK_INDEX <= tick <= MAX_TICK_INDEX:
            raise ValueError(f"Tick {tick} outside [{MIN_TICK_INDEX}, {MAX_TICK_INDEX}]")
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            sqrt_price = (Decimal("1.0001") ** tick).sqrt()
            return int(sqrt_price * Q64)

    @staticmethod
    def sqrt_price_x64_to_price(sqrt_price_x64: int, decimals_a: int, decimals_b: int) -> Decimal:
        """
        Token B per token A in display units.

        Formula: price = (sqrt_price / 2^64)^2 · 10^(decimals_a − decimals_b)
        """
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            ratio = Decimal(sqrt_price_x64) / Q64
            return (ratio * ratio).scaleb(decimals_a - decimals_b)

    @staticmethod
    def tick_to_price(tick: int, decimals_a: int, decimals_b: int) -> Decimal:
        """p(i) = 1.0001^i · 10^(decimals_a − decimals_b)"""
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return (Decimal("1.0001") ** tick).scaleb(decimals_a - decimals_b)

    @staticmethod
    def amounts_for_liquidity(liquidity: int, sqrt_price_x64: int, tick_current: int,
                              tick_lower: int, tick_upper: int) -> Tuple[int, int]:
        """
        Raw token amounts withdrawable for ``liquidity`` at the current price
        (zero slippage), rounded down like the program does.

          Below range: all token A
          In range:    both tokens
          Above range: all token B
        """
        if liquidity == 0:
            return 0, 0
        sqrt_lower = WhirlpoolMath.tick_to_sqrt_price_x64(tick_lower)
        sqrt_upper = WhirlpoolMath.tick_to_sqrt_price_x64(tick_upper)

        if tick_current < tick_lower:
            return _amount_a(liquidity, sqrt_lower, sqrt_upper), 0
        if tick_current < tick_upper:
            return (
                _amount_a(liquidity, sqrt_price_x64, sqrt_upper),
                _amount_b(liquidity, sqrt_lower, sqrt_price_x64),
            )
        return 0, _amount_b(liquidity, sqrt_lower, sqrt_upper)

    @staticmethod
    def is_in_range(tick_current: int, tick_lower: int, tick_upper: int) -> bool:
        return tick_lower <= tick_current <= tick_upper


def _amount_a(liquidity: int, sqrt_lower: int, sqrt_upper: int) -> int:
    if sqrt_upper <= sqrt_lower:
        return 0
    return liquidity * (sqrt_upper - sqrt_lower) * Q64 // (sqrt_lower * sqrt_upper)


def _amount_b(liquidity: int, sqrt_lower: int, sqrt_upper: int) -> int:
    if sqrt_upper <= sqrt_lower:
        return 0
    return liquidity * (sqrt_upper - sqrt_lower) // Q64


# ── Tick Arrays ──────────────────────────────────────────────────────────


def tick_array_start_index(tick: int, tick_spacing: int) -> int:
    """Start tick of the TickArray holding ``tick`` (floors for negatives)."""
    ticks_per_array = tick_spacing * TICK_ARRAY_SIZE
    return tick // ticks_per_array * ticks_per_array


def tick_offset_in_array(tick: int, start_index: int, tick_spacing: int) -> int:
    offset = (tick - start_index) // tick_spacing
    if not 0 <= offset < TICK_ARRAY_SIZE:
        raise ValueError(f"Tick {tick} is not in array starting at {start_index}")
    return offset


# ── Growth Inside ────────────────────────────────────────────────────────


def _growth_inside(tick_current: int, tick_lower: int, tick_upper: int,
                   global_growth: int, outside_lower: int, outside_upper: int) -> int:
    if tick_current < tick_lower:
        below = (global_growth - outside_lower) % U128
    else:
        below = outside_lower
    if tick_current < tick_upper:
        above = outside_upper
    else:
        above = (global_growth - outside_upper) % U128
    return (global_growth - below - above) % U128


def collectible_fees(position: PositionState, whirlpool: WhirlpoolState,
                     lower: TickState, upper: TickState) -> Tuple[int, int]:
    """
    Raw fees (token A, token B) a collect_fees call would pay right now.

    Logic mirrors Whirlpool ``collect_fees_quote``:
      1. growth_inside = global − below − above        (mod 2^128)
      2. owed = fee_owed + (growth_inside − checkpoint) · L >> 64
    """
    inside_a = _growth_inside(
        whirlpool.tick_current_index, position.tick_lower_index, position.tick_upper_index,
        whirlpool.fee_growth_global_a, lower.fee_growth_outside_a, upper.fee_growth_outside_a,
    )
    inside_b = _growth_inside(
        whirlpool.tick_current_index, position.tick_lower_index, position.tick_upper_index,
        whirlpool.fee_growth_global_b, lower.fee_growth_outside_b, upper.fee_growth_outside_b,
    )
    delta_a = (inside_a - position.fee_growth_checkpoint_a) % U128
    delta_b = (inside_b - position.fee_growth_checkpoint_b) % U128
    return (
        position.fee_owed_a + (delta_a * position.liquidity >> 64),
        position.fee_owed_b + (delta_b * position.liquidity >> 64),
    )


def next_reward_growths(whirlpool: WhirlpoolState, now: int) -> Tuple[int, ...]:
    """Global reward growths advanced from the last update to ``now``."""
    elapsed = max(0, int(now) - whirlpool.reward_last_updated_timestamp)
    growths = []
    for info in whirlpool.reward_infos:
        growth = info.growth_global_x64
        if info.initialized and whirlpool.liquidity > 0 and elapsed > 0:
            growth = (growth + info.emissions_per_second_x64 * elapsed // whirlpool.liquidity) % U128
        growths.append(growth)
    return tuple(growths)


def collectible_rewards(position: PositionState, whirlpool: WhirlpoolState,
                        lower: TickState, upper: TickState, now: int) -> Tuple[int, ...]:
    """Raw reward amounts per reward slot (0 for uninitialized slots)."""
    growths: Sequence[int] = next_reward_growths(whirlpool, now)
    amounts = []
    for index, info in enumerate(whirlpool.reward_infos):
        if not info.initialized or index >= len(position.reward_infos):
            amounts.append(0)
            continue
        inside = _growth_inside(
            whirlpool.tick_current_index, position.tick_lower_index, position.tick_upper_index,
            growths[index], lower.reward_growths_outside[index], upper.reward_growths_outside[index],
        )
        reward = position.reward_infos[index]
        delta = (inside - reward.growth_inside_checkpoint) % U128
        amounts.append(reward.amount_owed + (delta * position.liquidity >> 64))
    return tuple(amounts)
