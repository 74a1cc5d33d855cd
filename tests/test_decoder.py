"""
Test Suite — Whirlpool Instruction Decoding
===========================================

Synthetic flattened transactions (Whirlpool call followed by its SPL
token transfers) decoded into position events.

Run:  python -m pytest tests/test_decoder.py -v
"""

import struct
from types import MappingProxyType

import pytest
from solders.pubkey import Pubkey

from instruction_decoder import (
    DISCRIMINATORS,
    TOKEN_PROGRAM,
    WHIRLPOOL_PROGRAM,
    TransferCursor,
    decode_instruction,
    decode_transactions,
    instruction_name,
    sort_events,
    transfer_amount,
)
from orca_pnl.central_config import (
    PAYABLE_RENT_LAMPORTS,
    PAYABLE_RENT_LAMPORTS_WITHOUT_METADATA,
    RECLAIMABLE_RENT_LAMPORTS,
)
from orca_pnl.errors import InstructionDecodeError
from orca_pnl.models import (
    ClosePosition,
    CollectFees,
    CollectReward,
    DecreaseLiquidity,
    IncreaseLiquidity,
    OpenPosition,
    RawInstruction,
)
from orca_pnl.rpc_helpers import encode_base58, instruction_discriminator


# ── Helpers ──────────────────────────────────────────────────────────────

SIGNATURE = "5" * 64
BLOCK_TIME = 1_700_000_000
FEE = 5000


def keys(n):
    return tuple(Pubkey.new_unique() for _ in range(n))


def whirlpool_ix(name, payload=b"", accounts=(), mints=None, signature=SIGNATURE, block_time=BLOCK_TIME):
    return RawInstruction(
        signature=signature,
        block_time=block_time,
        transaction_fee=FEE,
        program_id=WHIRLPOOL_PROGRAM,
        accounts=tuple(accounts),
        data=encode_base58(instruction_discriminator(name) + payload),
        token_mints=MappingProxyType(mints or {}),
    )


def transfer_ix(amount, checked=False, signature=SIGNATURE):
    if checked:
        parsed = {"type": "transferChecked", "info": {"tokenAmount": {"amount": str(amount), "decimals": 6}}}
    else:
        parsed = {"type": "transfer", "info": {"amount": str(amount)}}
    return RawInstruction(
        signature=signature,
        block_time=BLOCK_TIME,
        transaction_fee=FEE,
        program_id=TOKEN_PROGRAM,
        program="spl-token",
        parsed=parsed,
    )


def liquidity_payload(liquidity, max_a=0, max_b=0):
    return struct.pack("<QQQQ", liquidity & (2 ** 64 - 1), liquidity >> 64, max_a, max_b)


def liquidity_accounts():
    accounts = keys(11)
    mint_a, mint_b = Pubkey.new_unique(), Pubkey.new_unique()
    return accounts, {accounts[7]: mint_a, accounts[8]: mint_b}, mint_a, mint_b


# ═══════════════════════════════════════════════════════════════════════════
# Discriminators
# ═══════════════════════════════════════════════════════════════════════════


class TestDiscriminators:
    def test_increase_liquidity_matches_program(self):
        assert list(instruction_discriminator("increase_liquidity")) == [46, 156, 243, 118, 13, 205, 251, 178]

    def test_close_position_matches_program(self):
        assert instruction_discriminator("close_position").hex() == "7b86510031446262"

    def test_every_supported_instruction_registered(self):
        assert set(DISCRIMINATORS.values()) == {
            "open_position",
            "open_position_with_metadata",
            "increase_liquidity",
            "decrease_liquidity",
            "collect_fees",
            "collect_reward",
            "close_position",
        }

    def test_other_program_not_recognized(self):
        ix = whirlpool_ix("increase_liquidity", liquidity_payload(1))
        other = RawInstruction(
            signature=ix.signature, block_time=ix.block_time, transaction_fee=FEE,
            program_id=Pubkey.new_unique(), data=ix.data,
        )
        assert instruction_name(other) is None

    def test_unknown_whirlpool_instruction_not_recognized(self):
        assert instruction_name(whirlpool_ix("swap", b"\x00" * 16)) is None


# ═══════════════════════════════════════════════════════════════════════════
# Transfer cursor
# ═══════════════════════════════════════════════════════════════════════════


class TestTransferCursor:
    def test_transfer_amount(self):
        assert transfer_amount(transfer_ix(42)) == 42

    def test_transfer_checked_amount(self):
        assert transfer_amount(transfer_ix(42, checked=True)) == 42

    def test_non_transfer_ignored(self):
        ix = RawInstruction(signature=SIGNATURE, block_time=0, transaction_fee=0,
                            program="spl-token", parsed={"type": "closeAccount", "info": {}})
        assert transfer_amount(ix) is None

    def test_consumes_in_order(self):
        instructions = [transfer_ix(1), transfer_ix(2)]
        cursor = TransferCursor(instructions, 0)
        assert cursor.next_amount() == 1
        assert cursor.next_amount() == 2

    def test_stops_at_next_whirlpool_call(self):
        instructions = [
            whirlpool_ix("increase_liquidity", liquidity_payload(1)),
            transfer_ix(7),
        ]
        cursor = TransferCursor(instructions, 0)
        with pytest.raises(InstructionDecodeError):
            cursor.next_amount()

    def test_exhausted(self):
        with pytest.raises(InstructionDecodeError):
            TransferCursor([transfer_ix(1)], 1).next_amount()


# ═══════════════════════════════════════════════════════════════════════════
# Per-instruction decoding
# ═══════════════════════════════════════════════════════════════════════════


class TestOpenPosition:
    def _accounts(self, with_metadata):
        funder, owner, position, mint = keys(4)
        whirlpool = Pubkey.new_unique()
        middle = keys(2 if with_metadata else 1)
        return (funder, owner, position, mint, *middle, whirlpool, TOKEN_PROGRAM, *keys(3))

    def test_open_position(self):
        accounts = self._accounts(False)
        ix = whirlpool_ix("open_position", struct.pack("<Bii", 255, -128, 256), accounts)
        event = decode_instruction([ix], 0)
        assert isinstance(event, OpenPosition)
        assert event.owner == accounts[1]
        assert event.position == accounts[2]
        assert event.position_mint == accounts[3]
        assert event.whirlpool == accounts[5]
        assert event.tick_lower_index == -128
        assert event.tick_upper_index == 256
        assert event.rent_fee == PAYABLE_RENT_LAMPORTS_WITHOUT_METADATA
        assert event.transaction_fee == FEE

    def test_open_position_with_metadata(self):
        accounts = self._accounts(True)
        ix = whirlpool_ix("open_position_with_metadata", struct.pack("<BBii", 255, 254, -64, 64), accounts)
        event = decode_instruction([ix], 0)
        assert event.whirlpool == accounts[6]
        assert (event.tick_lower_index, event.tick_upper_index) == (-64, 64)
        assert event.rent_fee == PAYABLE_RENT_LAMPORTS

    def test_missing_token_program(self):
        ix = whirlpool_ix("open_position", struct.pack("<Bii", 255, 0, 64), keys(8))
        with pytest.raises(InstructionDecodeError):
            decode_instruction([ix], 0)

    def test_short_data(self):
        ix = whirlpool_ix("open_position", b"\x01\x02", self._accounts(False))
        with pytest.raises(InstructionDecodeError):
            decode_instruction([ix], 0)


class TestLiquidityChange:
    @pytest.mark.parametrize("name, event_type", [
        ("increase_liquidity", IncreaseLiquidity),
        ("decrease_liquidity", DecreaseLiquidity),
    ])
    def test_amounts_from_following_transfers(self, name, event_type):
        accounts, mints, mint_a, mint_b = liquidity_accounts()
        instructions = [
            whirlpool_ix(name, liquidity_payload(2 ** 70 + 5, 10, 20), accounts, mints),
            transfer_ix(1_000),
            transfer_ix(2_000, checked=True),
        ]
        event = decode_instruction(instructions, 0)
        assert isinstance(event, event_type)
        assert event.whirlpool == accounts[0]
        assert event.position == accounts[3]
        assert event.liquidity_delta == 2 ** 70 + 5
        assert (event.token_a_amount, event.token_b_amount) == (1_000, 2_000)
        assert (event.token_a_mint, event.token_b_mint) == (mint_a, mint_b)

    def test_missing_second_transfer(self):
        accounts, mints, _, _ = liquidity_accounts()
        instructions = [whirlpool_ix("increase_liquidity", liquidity_payload(1), accounts, mints), transfer_ix(1)]
        with pytest.raises(InstructionDecodeError):
            decode_instruction(instructions, 0)

    def test_unknown_vault_mint(self):
        accounts, _, _, _ = liquidity_accounts()
        instructions = [
            whirlpool_ix("increase_liquidity", liquidity_payload(1), accounts, {}),
            transfer_ix(1),
            transfer_ix(2),
        ]
        with pytest.raises(InstructionDecodeError):
            decode_instruction(instructions, 0)

    def test_too_few_accounts(self):
        instructions = [
            whirlpool_ix("decrease_liquidity", liquidity_payload(1), keys(3)),
            transfer_ix(1),
            transfer_ix(2),
        ]
        with pytest.raises(InstructionDecodeError):
            decode_instruction(instructions, 0)


class TestCollect:
    def test_collect_fees(self):
        accounts = keys(9)
        mint_a, mint_b = Pubkey.new_unique(), Pubkey.new_unique()
        instructions = [
            whirlpool_ix("collect_fees", b"", accounts, {accounts[5]: mint_a, accounts[7]: mint_b}),
            transfer_ix(11),
            transfer_ix(22),
        ]
        event = decode_instruction(instructions, 0)
        assert isinstance(event, CollectFees)
        assert event.position == accounts[2]
        assert (event.token_a_fee, event.token_b_fee) == (11, 22)
        assert (event.token_a_mint, event.token_b_mint) == (mint_a, mint_b)

    def test_collect_reward(self):
        accounts = keys(7)
        reward_mint = Pubkey.new_unique()
        instructions = [
            whirlpool_ix("collect_reward", bytes([2]), accounts, {accounts[5]: reward_mint}),
            transfer_ix(333),
        ]
        event = decode_instruction(instructions, 0)
        assert isinstance(event, CollectReward)
        assert event.reward_index == 2
        assert event.reward_mint == reward_mint
        assert event.reward_amount == 333

    def test_close_position(self):
        accounts = keys(6)
        event = decode_instruction([whirlpool_ix("close_position", b"", accounts)], 0)
        assert isinstance(event, ClosePosition)
        assert event.position == accounts[2]
        assert event.reclaimed_rent == RECLAIMABLE_RENT_LAMPORTS


# ═══════════════════════════════════════════════════════════════════════════
# Whole transactions
# ═══════════════════════════════════════════════════════════════════════════


class TestDecodeTransactions:
    def test_two_calls_in_one_transaction(self):
        accounts, mints, _, _ = liquidity_accounts()
        transaction = (
            whirlpool_ix("collect_fees", b"", keys(2) + (accounts[3],) + keys(2) + (accounts[7], Pubkey.new_unique(), accounts[8]), mints),
            transfer_ix(5),
            transfer_ix(6),
            whirlpool_ix("decrease_liquidity", liquidity_payload(100), accounts, mints),
            transfer_ix(50),
            transfer_ix(60),
        )
        grouped = decode_transactions([transaction])
        events = grouped[accounts[3]]
        assert [type(e) for e in events] == [CollectFees, DecreaseLiquidity]
        assert (events[0].token_a_fee, events[0].token_b_fee) == (5, 6)
        assert (events[1].token_a_amount, events[1].token_b_amount) == (50, 60)

    def test_undecodable_call_does_not_hide_the_rest(self):
        accounts = keys(6)
        transaction = (
            whirlpool_ix("increase_liquidity", liquidity_payload(1), keys(11)),  # no transfers
            whirlpool_ix("close_position", b"", accounts),
        )
        grouped = decode_transactions([transaction])
        assert list(grouped) == [accounts[2]]
        assert isinstance(grouped[accounts[2]][0], ClosePosition)

    def test_non_whirlpool_instructions_skipped(self):
        assert decode_transactions([(transfer_ix(1), transfer_ix(2))]) == {}

    def test_invalid_base58_skipped(self):
        ix = RawInstruction(signature=SIGNATURE, block_time=0, transaction_fee=0,
                            program_id=WHIRLPOOL_PROGRAM, data="0OIl")
        assert decode_transactions([(ix,)]) == {}


class TestSortEvents:
    def test_stable_for_equal_block_times(self):
        accounts = keys(6)
        late = decode_instruction([whirlpool_ix("close_position", b"", accounts, block_time=20)], 0)
        first = decode_instruction([whirlpool_ix("close_position", b"", accounts, signature="a", block_time=10)], 0)
        second = decode_instruction([whirlpool_ix("close_position", b"", accounts, signature="b", block_time=10)], 0)
        ordered = sort_events([late, first, second])
        assert [e.signature for e in ordered] == ["a", "b", SIGNATURE]
