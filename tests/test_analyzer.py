"""
Test Suite — Per-Position Orchestration
=======================================

End-to-end over the pure stages: events + snapshots → summaries, with
failures isolated to the position that caused them.

Run:  python -m pytest tests/test_analyzer.py -v
"""

from decimal import Decimal

import logging

import pytest
from solders.pubkey import Pubkey

from orca_pnl.errors import MalformedPositionError
from orca_pnl.models import (
    ClosePosition,
    DecreaseLiquidity,
    IncreaseLiquidity,
    OpenPosition,
    PositionState,
    TickState,
    WhirlpoolState,
)
from orca_pnl.token_registry import SOL_MINT, TokenRegistry
from position_analyzer import analyze_positions, lifecycle
from price_fetcher import HOUR, PriceBook

T1, T2, T3 = HOUR, 2 * HOUR, 3 * HOUR

MINT_A = Pubkey.new_unique()
MINT_B = Pubkey.new_unique()
UNPRICED = Pubkey.new_unique()

PRICES = PriceBook(
    {
        MINT_A: {T1: Decimal("1"), T2: Decimal("1.10"), T3: Decimal("1.20")},
        MINT_B: {T1: Decimal("1"), T2: Decimal("1"), T3: Decimal("1")},
        SOL_MINT: {T1: Decimal("100"), T2: Decimal("100"), T3: Decimal("100")},
    },
    now=T3,
)
TOKENS = TokenRegistry.from_decimals({MINT_A: 6, MINT_B: 6, UNPRICED: 6})


def whirlpool(mint_a=MINT_A, mint_b=MINT_B):
    return WhirlpoolState(
        address=Pubkey.new_unique(), tick_spacing=64, fee_rate=3000, liquidity=0,
        sqrt_price=2 ** 64, tick_current_index=0,
        token_mint_a=mint_a, token_vault_a=Pubkey.new_unique(), fee_growth_global_a=0,
        token_mint_b=mint_b, token_vault_b=Pubkey.new_unique(), fee_growth_global_b=0,
        reward_last_updated_timestamp=0,
    )


def closed_lifecycle(pool, position, amount=10_000_000):
    """Open, deposit 10 A + 10 B (by default), withdraw everything, close."""
    a, b = pool.token_mint_a, pool.token_mint_b
    return [
        ClosePosition("close", T3, 5000, position, 4_433_520),
        OpenPosition("open", T1, 5000, pool.address, position, Pubkey.new_unique(),
                     Pubkey.new_unique(), -64, 64, 5_894_120),
        IncreaseLiquidity("open", T1, 5000, pool.address, position, 1000, amount, amount, a, b),
        DecreaseLiquidity("close", T3, 5000, pool.address, position, 1000, amount, amount, a, b),
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_open_and_close(self):
        events = closed_lifecycle(whirlpool(), Pubkey.new_unique())
        opened, closed = lifecycle(events)
        assert isinstance(opened, OpenPosition)
        assert isinstance(closed, ClosePosition)

    def test_missing_open(self):
        events = closed_lifecycle(whirlpool(), Pubkey.new_unique())[2:]
        with pytest.raises(MalformedPositionError):
            lifecycle(events)

    def test_two_closes(self):
        events = closed_lifecycle(whirlpool(), Pubkey.new_unique())
        with pytest.raises(MalformedPositionError):
            lifecycle(events + events[:1])


# ═══════════════════════════════════════════════════════════════════════════
# Batch analysis
# ═══════════════════════════════════════════════════════════════════════════


class TestAnalyzePositions:
    def test_closed_position_summary(self):
        pool = whirlpool()
        position = Pubkey.new_unique()
        result = analyze_positions(
            {position: closed_lifecycle(pool, position)},
            positions={position: None}, pools={pool.address: pool}, ticks={},
            tokens=TOKENS, prices=PRICES,
        )
        assert result.skipped == ()
        (summary,) = result.summaries
        assert summary.closed_at == T3
        assert summary.deposited_value == Decimal("20")
        assert summary.withdrawn_value == Decimal("22")
        # everything withdrawn at once: HODL value equals the withdrawal
        assert summary.forgone_value == Decimal("22")
        assert summary.current_value == 0

    def test_missing_price_only_skips_that_position(self):
        good_pool, bad_pool = whirlpool(), whirlpool(mint_a=UNPRICED)
        good, bad = Pubkey.new_unique(), Pubkey.new_unique()
        result = analyze_positions(
            {bad: closed_lifecycle(bad_pool, bad), good: closed_lifecycle(good_pool, good)},
            positions={}, pools={good_pool.address: good_pool, bad_pool.address: bad_pool},
            ticks={}, tokens=TOKENS, prices=PRICES,
        )
        assert [s.position for s in result.summaries] == [good]
        assert [position for position, _ in result.skipped] == [bad]

    def test_missing_pool_skipped(self):
        pool = whirlpool()
        position = Pubkey.new_unique()
        result = analyze_positions(
            {position: closed_lifecycle(pool, position)},
            positions={}, pools={}, ticks={}, tokens=TOKENS, prices=PRICES,
        )
        assert result.summaries == ()
        assert result.skipped[0][0] == position

    def test_malformed_position_skipped(self):
        pool = whirlpool()
        position = Pubkey.new_unique()
        events = closed_lifecycle(pool, position)[2:]
        result = analyze_positions(
            {position: events}, positions={}, pools={pool.address: pool},
            ticks={}, tokens=TOKENS, prices=PRICES,
        )
        assert result.summaries == ()
        assert len(result.skipped) == 1

    def test_open_position_without_account_quotes_zero(self):
        pool = whirlpool()
        position = Pubkey.new_unique()
        events = [e for e in closed_lifecycle(pool, position)
                  if not isinstance(e, (ClosePosition, DecreaseLiquidity))]
        result = analyze_positions(
            {position: events}, positions={position: None}, pools={pool.address: pool},
            ticks={}, tokens=TOKENS, prices=PRICES,
        )
        (summary,) = result.summaries
        assert summary.is_open
        assert summary.current_value == 0
        # remaining deposit priced now: 10 A at $1.20 + 10 B at $1
        assert summary.forgone_value == Decimal("22")

    def test_below_materiality_skipped_with_warning(self, caplog):
        pool = whirlpool()
        small, large = Pubkey.new_unique(), Pubkey.new_unique()
        with caplog.at_level(logging.WARNING, logger="position_analyzer"):
            # 0.25 A + 0.25 B at $1 → $0.50 deposited
            result = analyze_positions(
                {small: closed_lifecycle(pool, small, amount=250_000),
                 large: closed_lifecycle(pool, large)},
                positions={}, pools={pool.address: pool}, ticks={},
                tokens=TOKENS, prices=PRICES,
            )
        assert [s.position for s in result.summaries] == [large]
        assert [position for position, _ in result.skipped] == [small]
        assert "threshold" in result.skipped[0][1]
        (record,) = [r for r in caplog.records
                     if r.name == "position_analyzer" and r.levelno == logging.WARNING]
        assert str(small) in record.getMessage()


# ═══════════════════════════════════════════════════════════════════════════
# Live quote inputs
# ═══════════════════════════════════════════════════════════════════════════


def open_state(pool, position, fee_owed_a=0):
    return PositionState(
        address=position, whirlpool=pool.address, position_mint=Pubkey.new_unique(),
        liquidity=0, tick_lower_index=-64, tick_upper_index=64,
        fee_growth_checkpoint_a=0, fee_owed_a=fee_owed_a,
        fee_growth_checkpoint_b=0, fee_owed_b=0,
    )


def open_events(pool, position):
    return [e for e in closed_lifecycle(pool, position)
            if not isinstance(e, (ClosePosition, DecreaseLiquidity))]


class TestOpenPositionTicks:
    def test_quoted_with_loaded_ticks(self):
        pool = whirlpool()
        position = Pubkey.new_unique()
        ticks = {(pool.address, -64): TickState(), (pool.address, 64): TickState()}
        result = analyze_positions(
            {position: open_events(pool, position)},
            positions={position: open_state(pool, position, fee_owed_a=1_000_000)},
            pools={pool.address: pool}, ticks=ticks, tokens=TOKENS, prices=PRICES,
        )
        (summary,) = result.summaries
        # 1 A owed at the current $1.20
        assert summary.collectible_fees_value == Decimal("1.20")

    def test_missing_tick_skips_position(self):
        pool = whirlpool()
        position = Pubkey.new_unique()
        ticks = {(pool.address, -64): TickState()}
        result = analyze_positions(
            {position: open_events(pool, position)},
            positions={position: open_state(pool, position)},
            pools={pool.address: pool}, ticks=ticks, tokens=TOKENS, prices=PRICES,
        )
        assert result.summaries == ()
        ((skipped, reason),) = result.skipped
        assert skipped == position
        assert "tick 64" in reason
