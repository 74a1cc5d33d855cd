"""
Data Model — Instructions, Events, Ledger Totals, Summaries
============================================================

Every address is a ``solders.pubkey.Pubkey``: a fixed-width 32-byte key
with value equality, so maps keyed by address never depend on string
formatting.  All records are frozen; the only mutable state in the
pipeline lives inside ``position_ledger.PositionLedger`` for the duration
of a single pass.

Monetary fields are ``decimal.Decimal`` in USD.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple, Union

from solders.pubkey import Pubkey

ZERO = Decimal(0)


# ── Raw Instructions ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RawInstruction:
    """One top-level or inner instruction of a confirmed transaction.

    Inner instructions are spliced immediately after their parent, so a
    transaction is a flat, ordered sequence of these.  Non-program
    instructions (e.g. SPL token transfers) arrive pre-parsed by the node
    in ``program`` / ``parsed``.
    """

    signature: str
    block_time: int
    transaction_fee: int
    program_id: Optional[Pubkey] = None
    accounts: Tuple[Pubkey, ...] = ()
    data: Optional[str] = None  # base58
    program: Optional[str] = None  # e.g. "spl-token"
    parsed: Optional[Mapping[str, Any]] = None
    token_mints: Mapping[Pubkey, Pubkey] = field(
        default_factory=lambda: MappingProxyType({})
    )


# ── Decoded Events ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Event:
    signature: str
    block_time: int
    transaction_fee: int


@dataclass(frozen=True)
class OpenPosition(_Event):
    whirlpool: Pubkey
    position: Pubkey
    position_mint: Pubkey
    owner: Pubkey
    tick_lower_index: int
    tick_upper_index: int
    rent_fee: int  # lamports


@dataclass(frozen=True)
class IncreaseLiquidity(_Event):
    whirlpool: Pubkey
    position: Pubkey
    liquidity_delta: int
    token_a_amount: int
    token_b_amount: int
    token_a_mint: Pubkey
    token_b_mint: Pubkey


@dataclass(frozen=True)
class DecreaseLiquidity(_Event):
    whirlpool: Pubkey
    position: Pubkey
    liquidity_delta: int
    token_a_amount: int
    token_b_amount: int
    token_a_mint: Pubkey
    token_b_mint: Pubkey


@dataclass(frozen=True)
class CollectFees(_Event):
    whirlpool: Pubkey
    position: Pubkey
    token_a_fee: int
    token_b_fee: int
    token_a_mint: Pubkey
    token_b_mint: Pubkey


@dataclass(frozen=True)
class CollectReward(_Event):
    whirlpool: Pubkey
    position: Pubkey
    reward_index: int
    reward_mint: Pubkey
    reward_amount: int


@dataclass(frozen=True)
class ClosePosition(_Event):
    position: Pubkey
    reclaimed_rent: int  # lamports


DecodedEvent = Union[
    OpenPosition,
    IncreaseLiquidity,
    DecreaseLiquidity,
    CollectFees,
    CollectReward,
    ClosePosition,
]


# ── Accounting ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PositionLedgerTotals:
    """Accumulated USD totals of one position after a full temporal pass."""

    deposited_value: Decimal = ZERO
    withdrawn_value: Decimal = ZERO
    forgone_value: Decimal = ZERO
    position_size: Decimal = ZERO  # peak net deposit
    collected_fees_value: Decimal = ZERO
    collected_rewards_value: Decimal = ZERO
    paid_rent: Decimal = ZERO  # negative once refunded beyond cost
    transaction_cost: Decimal = ZERO


@dataclass(frozen=True)
class LiveQuote:
    """What the position is still worth on chain right now."""

    current_value: Decimal = ZERO
    collectible_fees_value: Decimal = ZERO
    collectible_rewards_value: Decimal = ZERO
    reclaimable_rent: Decimal = ZERO

    @classmethod
    def zero(cls) -> "LiveQuote":
        return cls()


@dataclass(frozen=True)
class PositionSummary:
    # Identity
    whirlpool: Pubkey
    position: Pubkey
    position_mint: Pubkey
    owner: Pubkey
    opened_at: int
    closed_at: Optional[int]

    # Ledger totals
    deposited_value: Decimal
    withdrawn_value: Decimal
    forgone_value: Decimal
    position_size: Decimal
    collected_fees_value: Decimal
    collected_rewards_value: Decimal
    paid_rent: Decimal
    transaction_cost: Decimal

    # Live quote
    current_value: Decimal
    collectible_fees_value: Decimal
    collectible_rewards_value: Decimal
    reclaimable_rent: Decimal

    # Derived
    profit: Decimal
    profit_ratio: Decimal
    forgone_profit: Decimal
    forgone_profit_ratio: Decimal
    opportunity_cost: Decimal
    opportunity_cost_ratio: Decimal

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        """Column order used by the CSV writer."""
        return tuple(f.name for f in fields(cls))


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of one batch: analyzed summaries and skipped positions."""

    summaries: Tuple[PositionSummary, ...] = ()
    skipped: Tuple[Tuple[Pubkey, str], ...] = ()


# ── On-Chain Account Snapshots ───────────────────────────────────────────


@dataclass(frozen=True)
class WhirlpoolRewardInfo:
    mint: Pubkey
    vault: Pubkey
    emissions_per_second_x64: int
    growth_global_x64: int

    @property
    def initialized(self) -> bool:
        return self.mint != Pubkey.default()


@dataclass(frozen=True)
class WhirlpoolState:
    address: Pubkey
    tick_spacing: int
    fee_rate: int
    liquidity: int
    sqrt_price: int  # Q64.64
    tick_current_index: int
    token_mint_a: Pubkey
    token_vault_a: Pubkey
    fee_growth_global_a: int
    token_mint_b: Pubkey
    token_vault_b: Pubkey
    fee_growth_global_b: int
    reward_last_updated_timestamp: int
    reward_infos: Tuple[WhirlpoolRewardInfo, ...] = ()


@dataclass(frozen=True)
class PositionRewardInfo:
    growth_inside_checkpoint: int
    amount_owed: int


@dataclass(frozen=True)
class PositionState:
    address: Pubkey
    whirlpool: Pubkey
    position_mint: Pubkey
    liquidity: int
    tick_lower_index: int
    tick_upper_index: int
    fee_growth_checkpoint_a: int
    fee_owed_a: int
    fee_growth_checkpoint_b: int
    fee_owed_b: int
    reward_infos: Tuple[PositionRewardInfo, ...] = ()


@dataclass(frozen=True)
class TickState:
    initialized: bool = False
    liquidity_net: int = 0
    liquidity_gross: int = 0
    fee_growth_outside_a: int = 0
    fee_growth_outside_b: int = 0
    reward_growths_outside: Tuple[int, ...] = (0, 0, 0)
