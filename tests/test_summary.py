"""
Test Suite — Position Summaries and Live Quotes
===============================================

Derived profitability figures from ledger totals, and the on-chain live
quote of open positions.

Run:  python -m pytest tests/test_summary.py -v
"""

from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from orca_pnl.errors import BelowMaterialityError, MissingPriceError
from orca_pnl.models import (
    LiveQuote,
    OpenPosition,
    PositionLedgerTotals,
    PositionRewardInfo,
    PositionState,
    TickState,
    WhirlpoolRewardInfo,
    WhirlpoolState,
)
from orca_pnl.token_registry import SOL_MINT, TokenRegistry
from position_summary import build_live_quote, reclaimable_rent_value, summarize
from whirlpool_math import WhirlpoolMath

MINT_A = Pubkey.new_unique()
MINT_B = Pubkey.new_unique()
REWARD = Pubkey.new_unique()
POOL = Pubkey.new_unique()

OPENED = OpenPosition(
    signature="open", block_time=1_000, transaction_fee=5000,
    whirlpool=POOL, position=Pubkey.new_unique(), position_mint=Pubkey.new_unique(),
    owner=Pubkey.new_unique(), tick_lower_index=-64, tick_upper_index=64, rent_fee=0,
)

TOTALS = PositionLedgerTotals(
    deposited_value=Decimal("100"),
    withdrawn_value=Decimal("110"),
    forgone_value=Decimal("120"),
    position_size=Decimal("100"),
    collected_fees_value=Decimal("5"),
    collected_rewards_value=Decimal("0"),
    paid_rent=Decimal("1"),
    transaction_cost=Decimal("0.5"),
)


# ═══════════════════════════════════════════════════════════════════════════
# summarize
# ═══════════════════════════════════════════════════════════════════════════


class TestSummarize:
    def test_closed_position_figures(self):
        s = summarize(TOTALS, LiveQuote.zero(), OPENED, closed_at=2_000)
        # gains 110 + 5 = 115, losses 100 + 0.5 + 1 = 101.5
        assert s.profit == Decimal("13.5")
        assert s.forgone_profit == Decimal("20")
        assert s.opportunity_cost == Decimal("6.5")
        assert s.profit_ratio == Decimal("0.135")
        assert s.forgone_profit_ratio == Decimal("0.2")
        assert s.opportunity_cost_ratio == Decimal("-0.065")

    def test_identity_fields(self):
        s = summarize(TOTALS, LiveQuote.zero(), OPENED, closed_at=2_000)
        assert s.whirlpool == POOL
        assert s.owner == OPENED.owner
        assert s.opened_at == 1_000
        assert s.closed_at == 2_000
        assert not s.is_open

    def test_open_position_counts_live_quote_as_gain(self):
        quote = LiveQuote(
            current_value=Decimal("10"),
            collectible_fees_value=Decimal("1"),
            collectible_rewards_value=Decimal("2"),
            reclaimable_rent=Decimal("0.5"),
        )
        s = summarize(TOTALS, quote, OPENED)
        assert s.is_open
        assert s.profit == Decimal("13.5") + Decimal("13.5")

    def test_opportunity_cost_identity(self):
        s = summarize(TOTALS, LiveQuote.zero(), OPENED)
        assert s.opportunity_cost == s.forgone_profit - s.profit

    @pytest.mark.parametrize("deposited", [Decimal("0"), Decimal("0.50"), Decimal("0.999")])
    def test_below_materiality(self, deposited):
        totals = PositionLedgerTotals(deposited_value=deposited, position_size=deposited)
        with pytest.raises(BelowMaterialityError):
            summarize(totals, LiveQuote.zero(), OPENED)

    def test_zero_position_size(self):
        totals = PositionLedgerTotals(deposited_value=Decimal("5"), position_size=Decimal("0"))
        with pytest.raises(BelowMaterialityError):
            summarize(totals, LiveQuote.zero(), OPENED)

    def test_field_names_in_column_order(self):
        names = summarize(TOTALS, LiveQuote.zero(), OPENED).field_names()
        assert names[:4] == ("whirlpool", "position", "position_mint", "owner")
        assert names[-1] == "opportunity_cost_ratio"


# ═══════════════════════════════════════════════════════════════════════════
# Live quote
# ═══════════════════════════════════════════════════════════════════════════


PRICES = {MINT_A: Decimal("2"), MINT_B: Decimal("1"), SOL_MINT: Decimal("100")}
TOKENS = TokenRegistry.from_decimals({MINT_A: 6, MINT_B: 6})


def current_price(mint):
    try:
        return PRICES[mint]
    except KeyError:
        raise MissingPriceError(mint) from None


def pool(reward_infos=()):
    return WhirlpoolState(
        address=POOL, tick_spacing=64, fee_rate=3000, liquidity=10 ** 12,
        sqrt_price=2 ** 64, tick_current_index=0,
        token_mint_a=MINT_A, token_vault_a=Pubkey.new_unique(), fee_growth_global_a=0,
        token_mint_b=MINT_B, token_vault_b=Pubkey.new_unique(), fee_growth_global_b=0,
        reward_last_updated_timestamp=0, reward_infos=reward_infos,
    )


def position(liquidity=10 ** 9, fee_owed_a=0, fee_owed_b=0, reward_infos=()):
    return PositionState(
        address=OPENED.position, whirlpool=POOL, position_mint=OPENED.position_mint,
        liquidity=liquidity, tick_lower_index=-64, tick_upper_index=64,
        fee_growth_checkpoint_a=0, fee_owed_a=fee_owed_a,
        fee_growth_checkpoint_b=0, fee_owed_b=fee_owed_b, reward_infos=reward_infos,
    )


class TestLiveQuote:
    def test_reclaimable_rent_net_of_close_fee(self):
        # (2_394_240 + 2_039_280 − 10_000) lamports at $100
        assert reclaimable_rent_value(Decimal("100")) == Decimal("0.442352")

    def test_missing_position_account_is_zero(self):
        quote = build_live_quote(None, pool(), TickState(), TickState(), TOKENS, current_price, 0)
        assert quote == LiveQuote.zero()

    def test_current_value_from_liquidity(self):
        state = position()
        quote = build_live_quote(state, pool(), TickState(), TickState(), TOKENS, current_price, 0)
        amount_a, amount_b = WhirlpoolMath.amounts_for_liquidity(state.liquidity, 2 ** 64, 0, -64, 64)
        expected = Decimal(amount_a).scaleb(-6) * 2 + Decimal(amount_b).scaleb(-6)
        assert quote.current_value == expected
        assert quote.current_value > 0

    def test_owed_fees_valued(self):
        quote = build_live_quote(
            position(liquidity=0, fee_owed_a=1_000_000, fee_owed_b=3_000_000),
            pool(), TickState(), TickState(), TOKENS, current_price, 0,
        )
        assert quote.current_value == 0
        assert quote.collectible_fees_value == Decimal("5")

    def test_unpriced_reward_contributes_zero(self):
        reward = WhirlpoolRewardInfo(mint=REWARD, vault=Pubkey.new_unique(),
                                     emissions_per_second_x64=2 ** 64, growth_global_x64=0)
        state = position(reward_infos=(PositionRewardInfo(0, 5),))
        quote = build_live_quote(state, pool((reward,)), TickState(), TickState(),
                                 TOKENS, current_price, 1_000)
        assert quote.collectible_rewards_value == 0

    def test_missing_pool_token_price_raises(self):
        def no_token_a(mint):
            if mint == MINT_A:
                raise MissingPriceError(mint)
            return current_price(mint)

        with pytest.raises(MissingPriceError):
            build_live_quote(position(), pool(), TickState(), TickState(), TOKENS, no_token_a, 0)
