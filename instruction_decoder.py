#!/usr/bin/env python3
"""
Whirlpool Instruction Decoder
=============================

Turns the flattened instruction list of each transaction into typed
position events, grouped by position address.

Recognition:
  1. program id must be the Whirlpool program
  2. first 8 bytes of the base58 data must be the Anchor discriminator
     of a supported instruction: sha256("global:<name>")[:8]
  3. accounts are read at fixed positional offsets per call shape

Token amounts are not part of the instruction data (only limits are).
They come from the SPL Token ``transfer`` / ``transferChecked`` inner
instructions the program emits right after the call, consumed in order
(token A first, then token B) by a ``TransferCursor``.

Anything that cannot be decoded is skipped on its own; the rest of the
transaction still decodes.
"""

import logging
import struct
from collections import OrderedDict
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from solders.pubkey import Pubkey

from orca_pnl.central_config import (
    PAYABLE_RENT_LAMPORTS,
    PAYABLE_RENT_LAMPORTS_WITHOUT_METADATA,
    RECLAIMABLE_RENT_LAMPORTS,
    TOKEN_PROGRAM_ID,
    WHIRLPOOL_PROGRAM_ID,
)
from orca_pnl.errors import InstructionDecodeError
from orca_pnl.models import (
    ClosePosition,
    CollectFees,
    CollectReward,
    DecodedEvent,
    DecreaseLiquidity,
    IncreaseLiquidity,
    OpenPosition,
    RawInstruction,
)
from orca_pnl.rpc_helpers import (
    DISCRIMINATOR_BYTES,
    decode_base58,
    instruction_discriminator,
    read_i32,
    read_u8,
    read_u128,
    require_length,
)

logger = logging.getLogger(__name__)

WHIRLPOOL_PROGRAM = Pubkey.from_string(WHIRLPOOL_PROGRAM_ID)
TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)

TOKEN_TRANSFER_PROGRAMS = ("spl-token",)


# ── Transfer Cursor ──────────────────────────────────────────────────────


def transfer_amount(instruction: RawInstruction) -> Optional[int]:
    """Raw amount of an SPL token transfer instruction, else None."""
    if instruction.program not in TOKEN_TRANSFER_PROGRAMS or not instruction.parsed:
        return None
    kind = instruction.parsed.get("type")
    info = instruction.parsed.get("info") or {}
    if kind == "transfer" and "amount" in info:
        return int(info["amount"])
    if kind == "transferChecked" and "tokenAmount" in info:
        return int(info["tokenAmount"]["amount"])
    return None


class TransferCursor:
    """
    Forward-only lookahead over the instructions following a Whirlpool call.

    Each ``next_amount()`` returns the amount of the next SPL token
    transfer.  The scan stops at the next Whirlpool-program instruction:
    a transfer beyond it belongs to that call, so borrowing it would
    mis-attribute amounts.  Worst case is one linear scan of the
    transaction per call.
    """

    def __init__(self, instructions: Sequence[RawInstruction], start: int):
        self._instructions = instructions
        self._index = start

    def next_amount(self) -> int:
        while self._index < len(self._instructions):
            instruction = self._instructions[self._index]
            if instruction.program_id == WHIRLPOOL_PROGRAM:
                break
            self._index += 1
            amount = transfer_amount(instruction)
            if amount is not None:
                return amount
        raise InstructionDecodeError("No token transfer follows the instruction")


# ── Per-Instruction Decoders ─────────────────────────────────────────────


def _mint_of(instruction: RawInstruction, vault: Pubkey) -> Pubkey:
    try:
        return instruction.token_mints[vault]
    except KeyError:
        raise InstructionDecodeError(f"Unknown mint for token account {vault}") from None


def _common(instruction: RawInstruction) -> dict:
    return {
        "signature": instruction.signature,
        "block_time": instruction.block_time,
        "transaction_fee": instruction.transaction_fee,
    }


def _decode_open(instruction: RawInstruction, data: bytes, cursor: TransferCursor,
                 with_metadata: bool) -> OpenPosition:
    bumps = 2 if with_metadata else 1
    ticks_at = DISCRIMINATOR_BYTES + bumps
    require_length(data, ticks_at + 8, "open_position data")

    accounts = instruction.accounts
    try:
        token_program_at = accounts.index(TOKEN_PROGRAM)
    except ValueError:
        raise InstructionDecodeError("open_position without token program account") from None
    if token_program_at == 0:
        raise InstructionDecodeError("open_position has no whirlpool account")

    return OpenPosition(
        **_common(instruction),
        whirlpool=accounts[token_program_at - 1],
        owner=accounts[1],
        position=accounts[2],
        position_mint=accounts[3],
        tick_lower_index=read_i32(data, ticks_at),
        tick_upper_index=read_i32(data, ticks_at + 4),
        rent_fee=PAYABLE_RENT_LAMPORTS if with_metadata else PAYABLE_RENT_LAMPORTS_WITHOUT_METADATA,
    )


def _decode_liquidity_change(instruction: RawInstruction, data: bytes, cursor: TransferCursor,
                             event_type) -> DecodedEvent:
    require_length(data, DISCRIMINATOR_BYTES + 16, "liquidity instruction data")
    accounts = instruction.accounts
    token_a_mint = _mint_of(instruction, accounts[7])
    token_b_mint = _mint_of(instruction, accounts[8])
    return event_type(
        **_common(instruction),
        whirlpool=accounts[0],
        position=accounts[3],
        liquidity_delta=read_u128(data, DISCRIMINATOR_BYTES),
        token_a_amount=cursor.next_amount(),
        token_b_amount=cursor.next_amount(),
        token_a_mint=token_a_mint,
        token_b_mint=token_b_mint,
    )


def _decode_collect_fees(instruction: RawInstruction, data: bytes,
                         cursor: TransferCursor) -> CollectFees:
    accounts = instruction.accounts
    token_a_mint = _mint_of(instruction, accounts[5])
    token_b_mint = _mint_of(instruction, accounts[7])
    return CollectFees(
        **_common(instruction),
        whirlpool=accounts[0],
        position=accounts[2],
        token_a_fee=cursor.next_amount(),
        token_b_fee=cursor.next_amount(),
        token_a_mint=token_a_mint,
        token_b_mint=token_b_mint,
    )


def _decode_collect_reward(instruction: RawInstruction, data: bytes,
                           cursor: TransferCursor) -> CollectReward:
    require_length(data, DISCRIMINATOR_BYTES + 1, "collect_reward data")
    accounts = instruction.accounts
    reward_mint = _mint_of(instruction, accounts[5])
    return CollectReward(
        **_common(instruction),
        whirlpool=accounts[0],
        position=accounts[2],
        reward_index=read_u8(data, DISCRIMINATOR_BYTES),
        reward_mint=reward_mint,
        reward_amount=cursor.next_amount(),
    )


def _decode_close(instruction: RawInstruction, data: bytes,
                  cursor: TransferCursor) -> ClosePosition:
    return ClosePosition(
        **_common(instruction),
        position=instruction.accounts[2],
        reclaimed_rent=RECLAIMABLE_RENT_LAMPORTS,
    )


_Decoder = Callable[[RawInstruction, bytes, TransferCursor], DecodedEvent]

DECODERS: "MappingProxyType[str, _Decoder]" = MappingProxyType({
    "open_position": lambda ix, data, cursor: _decode_open(ix, data, cursor, False),
    "open_position_with_metadata": lambda ix, data, cursor: _decode_open(ix, data, cursor, True),
    "increase_liquidity": lambda ix, data, cursor: _decode_liquidity_change(ix, data, cursor, IncreaseLiquidity),
    "decrease_liquidity": lambda ix, data, cursor: _decode_liquidity_change(ix, data, cursor, DecreaseLiquidity),
    "collect_fees": _decode_collect_fees,
    "collect_reward": _decode_collect_reward,
    "close_position": _decode_close,
})

# discriminator → instruction name
DISCRIMINATORS = MappingProxyType(
    {instruction_discriminator(name): name for name in DECODERS}
)


# ── Public API ───────────────────────────────────────────────────────────


def instruction_name(instruction: RawInstruction) -> Optional[str]:
    """Supported Whirlpool instruction name, or None for anything else."""
    if instruction.program_id != WHIRLPOOL_PROGRAM or not instruction.data:
        return None
    try:
        data = decode_base58(instruction.data)
    except ValueError:
        return None
    return DISCRIMINATORS.get(data[:DISCRIMINATOR_BYTES])


def decode_instruction(instructions: Sequence[RawInstruction], index: int) -> Optional[DecodedEvent]:
    """
    Decode ``instructions[index]``.

    Returns None when the instruction is not a supported Whirlpool call.

    Raises:
        InstructionDecodeError: a supported call whose accounts, data or
            following transfers cannot be read.
    """
    instruction = instructions[index]
    name = instruction_name(instruction)
    if name is None:
        return None
    data = decode_base58(instruction.data)
    cursor = TransferCursor(instructions, index + 1)
    try:
        return DECODERS[name](instruction, data, cursor)
    except (ValueError, IndexError, struct.error) as e:
        raise InstructionDecodeError(f"{name}: {e}") from e


def decode_transactions(transactions: Iterable[Sequence[RawInstruction]]) -> Dict[Pubkey, List[DecodedEvent]]:
    """Decode every transaction; events grouped per position in discovery order."""
    by_position: Dict[Pubkey, List[DecodedEvent]] = OrderedDict()
    decoded = skipped = 0
    for instructions in transactions:
        for index in range(len(instructions)):
            try:
                event = decode_instruction(instructions, index)
            except InstructionDecodeError as e:
                skipped += 1
                logger.debug("Skipping instruction %d of %s: %s",
                             index, instructions[index].signature, e)
                continue
            if event is None:
                continue
            decoded += 1
            by_position.setdefault(event.position, []).append(event)
    logger.debug("Decoded %d events for %d positions (%d undecodable)",
                 decoded, len(by_position), skipped)
    return by_position


def sort_events(events: Iterable[DecodedEvent]) -> List[DecodedEvent]:
    """Stable sort by block time: same-time events keep discovery order."""
    return sorted(events, key=lambda event: event.block_time)
