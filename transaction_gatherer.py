#!/usr/bin/env python3
"""
Transaction Gatherer — Signature History to Flat Instruction Lists
==================================================================

Collects every confirmed transaction that touched a set of addresses
(pools, wallets, positions or position mints) and flattens each one into
the ordered ``RawInstruction`` sequence the decoder consumes.

Flow per address:
  1. getSignaturesForAddress   newest-first pages of 1000, ``cycles`` pages
                               at most; a short page means history ended
  2. union of signatures       duplicates across addresses removed
  3. getTransaction (batched)  jsonParsed, maxSupportedTransactionVersion 0
  4. flatten                   failed transactions dropped; inner
                               instructions spliced right after their
                               parent; token account → mint map built
                               from pre/post token balances

Ref: https://solana.com/docs/rpc/http/getsignaturesforaddress
     https://solana.com/docs/rpc/http/gettransaction
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from solders.pubkey import Pubkey

from orca_pnl.central_config import TRANSACTION_BATCH_SIZE, TRANSACTIONS_LIMIT
from orca_pnl.logger import link_address
from orca_pnl.models import RawInstruction
from orca_pnl.rpc_helpers import SolanaRpcClient, TaskPool

logger = logging.getLogger(__name__)

Transaction = Tuple[RawInstruction, ...]


# ── Flattening ───────────────────────────────────────────────────────────


def _key(entry: Any) -> str:
    # jsonParsed account keys are objects; legacy encodings are plain strings
    return entry["pubkey"] if isinstance(entry, dict) else entry


def token_mints(transaction: Dict[str, Any]) -> Dict[Pubkey, Pubkey]:
    """Token account → mint, from the pre and post token balances."""
    keys = transaction["transaction"]["message"]["accountKeys"]
    meta = transaction.get("meta") or {}
    mints: Dict[Pubkey, Pubkey] = {}
    for balance in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        account = Pubkey.from_string(_key(keys[balance["accountIndex"]]))
        mints[account] = Pubkey.from_string(balance["mint"])
    return mints


def _raw_instruction(ix: Dict[str, Any], signature: str, block_time: int, fee: int,
                     mints: "MappingProxyType[Pubkey, Pubkey]") -> RawInstruction:
    parsed = ix.get("parsed")
    program_id = ix.get("programId")
    return RawInstruction(
        signature=signature,
        block_time=block_time,
        transaction_fee=fee,
        program_id=Pubkey.from_string(program_id) if program_id else None,
        accounts=tuple(Pubkey.from_string(a) for a in ix.get("accounts") or []),
        data=ix.get("data"),
        program=ix.get("program"),
        parsed=parsed if isinstance(parsed, dict) else None,
        token_mints=mints,
    )


def flatten_transaction(transaction: Dict[str, Any]) -> Optional[Transaction]:
    """Ordered instructions of a successful transaction, None if it failed."""
    meta = transaction.get("meta") or {}
    if meta.get("err") is not None:
        return None

    signature = transaction["transaction"]["signatures"][0]
    block_time = transaction.get("blockTime") or 0
    fee = meta.get("fee", 0)
    mints = MappingProxyType(token_mints(transaction))
    inner = {
        entry["index"]: entry["instructions"]
        for entry in meta.get("innerInstructions") or []
    }

    flat: List[RawInstruction] = []
    for index, ix in enumerate(transaction["transaction"]["message"]["instructions"]):
        flat.append(_raw_instruction(ix, signature, block_time, fee, mints))
        for inner_ix in inner.get(index, []):
            flat.append(_raw_instruction(inner_ix, signature, block_time, fee, mints))
    return tuple(flat)


# ── Gatherer ─────────────────────────────────────────────────────────────


class TransactionGatherer:
    """
    Fetches and flattens the transaction history of many addresses.

    Usage:
        async with SolanaRpcClient(rpc_url) as rpc:
            transactions = await TransactionGatherer(rpc).gather(addresses, cycles=2)
    """

    def __init__(self, rpc: SolanaRpcClient, pool: Optional[TaskPool] = None,
                 page_size: int = TRANSACTIONS_LIMIT, batch_size: int = TRANSACTION_BATCH_SIZE):
        self.rpc = rpc
        self.pool = pool or TaskPool()
        self.page_size = page_size
        self.batch_size = batch_size

    async def signatures_for(self, address: Pubkey, cycles: int) -> List[str]:
        """Signatures of successful transactions, newest first, ``cycles`` pages at most."""
        signatures: List[str] = []
        before = None
        for _ in range(max(1, cycles)):
            page = await self.rpc.get_signatures_for_address(address, before=before, limit=self.page_size)
            signatures.extend(item["signature"] for item in page if item.get("err") is None)
            if len(page) < self.page_size:
                break
            before = page[-1]["signature"]
        logger.debug("%s: %d signatures", link_address(address), len(signatures))
        return signatures

    async def gather_signatures(self, addresses: Iterable[Pubkey], cycles: int) -> List[str]:
        """Union of signatures across addresses, first-seen order."""
        addresses = list(dict.fromkeys(addresses))
        found = await self.pool.map_settled(
            lambda address: self.signatures_for(address, cycles), addresses, label="Signature fetch"
        )
        unique: Dict[str, None] = {}
        for address in addresses:
            for signature in found.get(address, []):
                unique.setdefault(signature)
        return list(unique)

    async def fetch_transactions(self, signatures: Sequence[str]) -> List[Transaction]:
        batches = [
            tuple(signatures[start:start + self.batch_size])
            for start in range(0, len(signatures), self.batch_size)
        ]
        fetched = await self.pool.map_settled(self.rpc.get_transactions, batches, label="Transaction fetch")

        transactions: List[Transaction] = []
        failed = 0
        for batch in batches:
            for raw in fetched.get(batch, []):
                if raw is None:
                    continue
                flat = flatten_transaction(raw)
                if flat is None:
                    failed += 1
                    continue
                transactions.append(flat)
        logger.debug("Fetched %d transactions (%d failed on chain)", len(transactions), failed)
        return transactions

    async def gather(self, addresses: Iterable[Pubkey], cycles: int = 1) -> List[Transaction]:
        signatures = await self.gather_signatures(addresses, cycles)
        logger.info("Found %d transactions", len(signatures))
        return await self.fetch_transactions(signatures)
