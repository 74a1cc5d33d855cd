#!/usr/bin/env python3
"""
Position Ledger — Single-Pass Temporal Accounting
==================================================

Consumes the time-sorted events of ONE position and accumulates USD
totals, pricing each event at its own block time.

Rolling state (raw token units):
  rolling_a / rolling_b   — deposited tokens not yet attributed to a
                            withdrawal ("what you would hold if you had
                            never provided liquidity")
  rolling_liquidity       — liquidity still in the position

Transitions:
  OpenPosition      paid_rent += rent · SOL(t)
  IncreaseLiquidity deposited += A·pA(t) + B·pB(t); rolling += A, B, L
                    position_size = max(position_size, deposited − withdrawn)
  DecreaseLiquidity f = ΔL / rolling_liquidity  ∈ (0, 1]
                    withdrawn += A·pA(t) + B·pB(t)
                    forgone   += f·rolling_a·pA(t) + f·rolling_b·pB(t)
                    rolling  −= f·rolling, ΔL
  CollectFees       collected_fees += A·pA(t) + B·pB(t)
  CollectReward     collected_rewards += R·pR(t)
  ClosePosition     paid_rent −= reclaimed · SOL(t)
  every event       transaction fee counted once per signature; SOL, A and B
                    must all be priced at t

After the pass, what is still rolling is valued at the current price and
added to the forgone value (the HODL side of the comparison).
"""

from decimal import Decimal
from typing import Callable, Dict, Iterable

from solders.pubkey import Pubkey

from orca_pnl.central_config import NATIVE_DECIMALS
from orca_pnl.errors import LedgerInvariantError
from orca_pnl.models import (
    ZERO,
    ClosePosition,
    CollectFees,
    CollectReward,
    DecodedEvent,
    DecreaseLiquidity,
    IncreaseLiquidity,
    OpenPosition,
    PositionLedgerTotals,
)
from orca_pnl.token_registry import SOL_MINT


PriceAt = Callable[[Pubkey, int], Decimal]
CurrentPrice = Callable[[Pubkey], Decimal]
TokenDecimals = Callable[[Pubkey], int]


class PositionLedger:
    """
    Mutable accounting state for one position, fed one event at a time.

    Usage:
        ledger = PositionLedger(book.price_at, book.current_price,
                                tokens.decimals, pool.token_mint_a, pool.token_mint_b)
        for event in sort_events(events):
            ledger.apply(event)
        totals = ledger.finalize()

    Price lookups raise ``MissingPriceError``; nothing is ever substituted.
    """

    def __init__(self, price_at: PriceAt, current_price: CurrentPrice,
                 token_decimals: TokenDecimals, token_mint_a: Pubkey, token_mint_b: Pubkey):
        self._price_at = price_at
        self._current_price = current_price
        self._token_decimals = token_decimals
        self.token_mint_a = token_mint_a
        self.token_mint_b = token_mint_b

        self.rolling_a = ZERO
        self.rolling_b = ZERO
        self.rolling_liquidity = 0

        self.deposited_value = ZERO
        self.withdrawn_value = ZERO
        self.forgone_value = ZERO  # realized part only, see finalize()
        self.position_size = ZERO
        self.collected_fees_value = ZERO
        self.collected_rewards_value = ZERO
        self.paid_rent = ZERO
        self._transaction_costs: Dict[str, Decimal] = {}

    # ── Valuation ───────────────────────────────────────────────────

    def _value(self, mint: Pubkey, raw_amount, block_time: int) -> Decimal:
        if not raw_amount:
            return ZERO
        display = Decimal(raw_amount).scaleb(-self._token_decimals(mint))
        return display * self._price_at(mint, block_time)

    def _pair_value(self, amount_a, amount_b, block_time: int) -> Decimal:
        return (
            self._value(self.token_mint_a, amount_a, block_time)
            + self._value(self.token_mint_b, amount_b, block_time)
        )

    def _require_prices(self, block_time: int) -> None:
        # SOL and both pool tokens must be priced at every event, even for
        # a zero-amount leg
        for mint in (SOL_MINT, self.token_mint_a, self.token_mint_b):
            self._price_at(mint, block_time)

    def _lamports_value(self, lamports: int, block_time: int) -> Decimal:
        if not lamports:
            return ZERO
        return Decimal(lamports).scaleb(-NATIVE_DECIMALS) * self._price_at(SOL_MINT, block_time)

    # ── Transitions ─────────────────────────────────────────────────

    def apply(self, event: DecodedEvent) -> None:
        """Apply one event; events must arrive in block-time order."""
        t = event.block_time
        self._require_prices(t)

        if isinstance(event, OpenPosition):
            self.paid_rent += self._lamports_value(event.rent_fee, t)

        elif isinstance(event, IncreaseLiquidity):
            self.deposited_value += self._pair_value(event.token_a_amount, event.token_b_amount, t)
            self.rolling_a += event.token_a_amount
            self.rolling_b += event.token_b_amount
            self.rolling_liquidity += event.liquidity_delta
            self.position_size = max(self.position_size, self.deposited_value - self.withdrawn_value)

        elif isinstance(event, DecreaseLiquidity):
            self._apply_decrease(event)

        elif isinstance(event, CollectFees):
            self.collected_fees_value += self._pair_value(event.token_a_fee, event.token_b_fee, t)

        elif isinstance(event, CollectReward):
            self.collected_rewards_value += self._value(event.reward_mint, event.reward_amount, t)

        elif isinstance(event, ClosePosition):
            self.paid_rent -= self._lamports_value(event.reclaimed_rent, t)

        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

        if event.signature not in self._transaction_costs:
            self._transaction_costs[event.signature] = self._lamports_value(event.transaction_fee, t)

    def _apply_decrease(self, event: DecreaseLiquidity) -> None:
        if event.liquidity_delta <= 0 or event.liquidity_delta > self.rolling_liquidity:
            raise LedgerInvariantError(
                f"Withdrawal of {event.liquidity_delta} liquidity from a position holding "
                f"{self.rolling_liquidity} (tx {event.signature})"
            )
        t = event.block_time
        fraction = Decimal(event.liquidity_delta) / Decimal(self.rolling_liquidity)

        self.withdrawn_value += self._pair_value(event.token_a_amount, event.token_b_amount, t)

        released_a = self.rolling_a * fraction
        released_b = self.rolling_b * fraction
        self.forgone_value += self._pair_value(released_a, released_b, t)

        if event.liquidity_delta == self.rolling_liquidity:
            # Full withdrawal clears rolling state exactly
            self.rolling_a = ZERO
            self.rolling_b = ZERO
        else:
            self.rolling_a -= released_a
            self.rolling_b -= released_b
        self.rolling_liquidity -= event.liquidity_delta

    # ── Result ──────────────────────────────────────────────────────

    @property
    def transaction_cost(self) -> Decimal:
        return sum(self._transaction_costs.values(), ZERO)

    def remaining_forgone_value(self) -> Decimal:
        """Current value of the still-rolling tokens (both current prices required)."""
        value = ZERO
        for mint, rolling in ((self.token_mint_a, self.rolling_a), (self.token_mint_b, self.rolling_b)):
            price = self._current_price(mint)
            if rolling:
                value += rolling.scaleb(-self._token_decimals(mint)) * price
        return value

    def finalize(self) -> PositionLedgerTotals:
        """Totals after the pass; does not mutate state, so it is repeatable."""
        return PositionLedgerTotals(
            deposited_value=self.deposited_value,
            withdrawn_value=self.withdrawn_value,
            forgone_value=self.forgone_value + self.remaining_forgone_value(),
            position_size=self.position_size,
            collected_fees_value=self.collected_fees_value,
            collected_rewards_value=self.collected_rewards_value,
            paid_rent=self.paid_rent,
            transaction_cost=self.transaction_cost,
        )


def account(events: Iterable[DecodedEvent], price_at: PriceAt, current_price: CurrentPrice,
            token_decimals: TokenDecimals, token_mint_a: Pubkey,
            token_mint_b: Pubkey) -> PositionLedgerTotals:
    """Run one full accounting pass over time-sorted events."""
    ledger = PositionLedger(price_at, current_price, token_decimals, token_mint_a, token_mint_b)
    for event in events:
        ledger.apply(event)
    return ledger.finalize()
