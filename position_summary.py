#!/usr/bin/env python3
"""
Position Summary Builder
========================

Combines the ledger totals of a position with a live quote of what is
still on chain (outstanding liquidity, uncollected fees and rewards,
rent that closing would return) into the final ``PositionSummary``.

Derived quantities (USD):
  gains          = withdrawn + current + collected fees + collected rewards
                   + collectible fees + collectible rewards + reclaimable rent
  losses         = deposited + transaction cost + paid rent
  profit         = gains − losses
  forgone profit = forgone − deposited          (the HODL alternative)
  opportunity    = forgone profit − profit      (> 0: holding would have won)
  ratios         = value / position size        (opportunity ratio negated)
"""

import logging
from decimal import Decimal
from typing import Callable, Optional

from orca_pnl.central_config import (
    CLOSE_TRANSACTION_LAMPORTS,
    MATERIALITY_THRESHOLD_USD,
    NATIVE_DECIMALS,
    RECLAIMABLE_RENT_LAMPORTS,
)
from orca_pnl.errors import BelowMaterialityError, MissingPriceError, MissingTokenError
from orca_pnl.logger import link_address
from orca_pnl.models import (
    ZERO,
    LiveQuote,
    OpenPosition,
    PositionLedgerTotals,
    PositionState,
    PositionSummary,
    TickState,
    WhirlpoolState,
)
from orca_pnl.token_registry import SOL_MINT, TokenRegistry
from whirlpool_math import WhirlpoolMath, collectible_fees, collectible_rewards

logger = logging.getLogger(__name__)


# ── Live Quote ───────────────────────────────────────────────────────────


def reclaimable_rent_value(sol_price: Decimal) -> Decimal:
    """Rent a close would return, net of the close transaction itself."""
    lamports = RECLAIMABLE_RENT_LAMPORTS - CLOSE_TRANSACTION_LAMPORTS
    return Decimal(lamports).scaleb(-NATIVE_DECIMALS) * sol_price


def build_live_quote(position: Optional[PositionState], whirlpool: WhirlpoolState,
                     lower: TickState, upper: TickState, tokens: TokenRegistry,
                     current_price: Callable, now: int) -> LiveQuote:
    """
    Value of an open position as of ``now``.

    ``position`` is None when the account no longer exists (closed or
    transferred away); the quote is then all zeros.  Token A/B prices are
    required (``MissingPriceError`` otherwise); a reward token without
    metadata or price contributes zero and is logged.
    """
    if position is None:
        return LiveQuote.zero()

    mint_a, mint_b = whirlpool.token_mint_a, whirlpool.token_mint_b
    price_a, price_b = current_price(mint_a), current_price(mint_b)

    amount_a, amount_b = WhirlpoolMath.amounts_for_liquidity(
        position.liquidity, whirlpool.sqrt_price, whirlpool.tick_current_index,
        position.tick_lower_index, position.tick_upper_index,
    )
    current_value = (
        tokens.to_display(mint_a, amount_a) * price_a
        + tokens.to_display(mint_b, amount_b) * price_b
    )

    fee_a, fee_b = collectible_fees(position, whirlpool, lower, upper)
    fees_value = tokens.to_display(mint_a, fee_a) * price_a + tokens.to_display(mint_b, fee_b) * price_b

    rewards_value = ZERO
    rewards = collectible_rewards(position, whirlpool, lower, upper, now)
    for info, amount in zip(whirlpool.reward_infos, rewards):
        if not info.initialized or not amount:
            continue
        try:
            rewards_value += tokens.to_display(info.mint, amount) * current_price(info.mint)
        except (MissingPriceError, MissingTokenError) as e:
            logger.debug("Reward %s not valued: %s", link_address(info.mint), e)

    return LiveQuote(
        current_value=current_value,
        collectible_fees_value=fees_value,
        collectible_rewards_value=rewards_value,
        reclaimable_rent=reclaimable_rent_value(current_price(SOL_MINT)),
    )


# ── Summary ──────────────────────────────────────────────────────────────


def summarize(totals: PositionLedgerTotals, live_quote: LiveQuote, identity: OpenPosition,
              closed_at: Optional[int] = None) -> PositionSummary:
    """
    Derive profitability figures for one position.

    Raises:
        BelowMaterialityError: deposited value under the threshold, where
            ratios against the position size would be meaningless.
    """
    if totals.deposited_value < MATERIALITY_THRESHOLD_USD or totals.position_size <= 0:
        raise BelowMaterialityError(
            f"Deposited value ${totals.deposited_value:.2f} is below "
            f"${MATERIALITY_THRESHOLD_USD} threshold"
        )

    gains = (
        totals.withdrawn_value
        + live_quote.current_value
        + totals.collected_fees_value
        + totals.collected_rewards_value
        + live_quote.collectible_fees_value
        + live_quote.collectible_rewards_value
        + live_quote.reclaimable_rent
    )
    losses = totals.deposited_value + totals.transaction_cost + totals.paid_rent
    profit = gains - losses
    forgone_profit = totals.forgone_value - totals.deposited_value
    opportunity_cost = forgone_profit - profit
    size = totals.position_size

    return PositionSummary(
        whirlpool=identity.whirlpool,
        position=identity.position,
        position_mint=identity.position_mint,
        owner=identity.owner,
        opened_at=identity.block_time,
        closed_at=closed_at,
        deposited_value=totals.deposited_value,
        withdrawn_value=totals.withdrawn_value,
        forgone_value=totals.forgone_value,
        position_size=size,
        collected_fees_value=totals.collected_fees_value,
        collected_rewards_value=totals.collected_rewards_value,
        paid_rent=totals.paid_rent,
        transaction_cost=totals.transaction_cost,
        current_value=live_quote.current_value,
        collectible_fees_value=live_quote.collectible_fees_value,
        collectible_rewards_value=live_quote.collectible_rewards_value,
        reclaimable_rent=live_quote.reclaimable_rent,
        profit=profit,
        profit_ratio=profit / size,
        forgone_profit=forgone_profit,
        forgone_profit_ratio=forgone_profit / size,
        opportunity_cost=opportunity_cost,
        opportunity_cost_ratio=-opportunity_cost / size,
    )
