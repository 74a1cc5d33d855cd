#!/usr/bin/env python3
"""
Position Analyzer — Per-Position Orchestration
==============================================

Runs decode output through lifecycle validation, the ledger and the
summary builder for every position, isolating failures: a position that
cannot be analyzed (missing price, missing pool, malformed lifecycle,
below the materiality threshold, ledger invariant) is logged and skipped
while the rest of the batch completes.

All inputs are read-only snapshots fetched beforehand; nothing here
touches the network.
"""

import logging
from typing import List, Mapping, Optional, Sequence, Tuple

from solders.pubkey import Pubkey

from instruction_decoder import sort_events
from orca_pnl.errors import MalformedPositionError, MissingPoolError, PositionError
from orca_pnl.logger import link_address
from orca_pnl.models import (
    AnalysisResult,
    ClosePosition,
    DecodedEvent,
    LiveQuote,
    OpenPosition,
    PositionState,
    PositionSummary,
    TickState,
    WhirlpoolState,
)
from orca_pnl.token_registry import TokenRegistry
from position_ledger import account
from position_summary import build_live_quote, summarize
from price_fetcher import PriceBook

logger = logging.getLogger(__name__)

TickKey = Tuple[Pubkey, int]


def lifecycle(events: Sequence[DecodedEvent]) -> Tuple[OpenPosition, Optional[ClosePosition]]:
    """The single open event and the optional single close event."""
    opens = [e for e in events if isinstance(e, OpenPosition)]
    closes = [e for e in events if isinstance(e, ClosePosition)]
    if len(opens) != 1:
        raise MalformedPositionError(f"expected exactly one open event, found {len(opens)}")
    if len(closes) > 1:
        raise MalformedPositionError(f"expected at most one close event, found {len(closes)}")
    return opens[0], (closes[0] if closes else None)


def _tick(ticks: Mapping[TickKey, TickState], pool: WhirlpoolState, index: int) -> TickState:
    tick = ticks.get((pool.address, index))
    if tick is None:
        # fee and reward growth outside the range cannot be quoted without it
        raise MissingPoolError(f"tick {index} of whirlpool {pool.address} not loaded")
    return tick


def analyze_position(events: Sequence[DecodedEvent],
                     positions: Mapping[Pubkey, Optional[PositionState]],
                     pools: Mapping[Pubkey, WhirlpoolState],
                     ticks: Mapping[TickKey, TickState],
                     tokens: TokenRegistry, prices: PriceBook) -> PositionSummary:
    """Summary for one position's events; raises ``PositionError`` subclasses."""
    events = sort_events(events)
    opened, closed = lifecycle(events)

    pool = pools.get(opened.whirlpool)
    if pool is None:
        raise MissingPoolError(f"whirlpool {opened.whirlpool} not loaded")

    totals = account(
        events,
        prices.price_at,
        prices.current_price,
        tokens.decimals,
        pool.token_mint_a,
        pool.token_mint_b,
    )

    state = None if closed else positions.get(opened.position)
    if state is None:
        quote = LiveQuote.zero()
    else:
        quote = build_live_quote(
            state,
            pool,
            _tick(ticks, pool, state.tick_lower_index),
            _tick(ticks, pool, state.tick_upper_index),
            tokens,
            prices.current_price,
            prices.now,
        )

    return summarize(totals, quote, opened, closed.block_time if closed else None)


def analyze_positions(position_events: Mapping[Pubkey, Sequence[DecodedEvent]],
                      positions: Mapping[Pubkey, Optional[PositionState]],
                      pools: Mapping[Pubkey, WhirlpoolState],
                      ticks: Mapping[TickKey, TickState],
                      tokens: TokenRegistry, prices: PriceBook) -> AnalysisResult:
    """Analyze every position; failures are logged and reported as skipped."""
    summaries: List[PositionSummary] = []
    skipped: List[Tuple[Pubkey, str]] = []

    for position, events in position_events.items():
        try:
            summaries.append(analyze_position(events, positions, pools, ticks, tokens, prices))
        except PositionError as e:
            logger.warning("Skipping position %s: %s", link_address(position), e)
            skipped.append((position, str(e)))

    logger.info("Analyzed %d positions, skipped %d", len(summaries), len(skipped))
    return AnalysisResult(summaries=tuple(summaries), skipped=tuple(skipped))
