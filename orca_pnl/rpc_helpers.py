#!/usr/bin/env python3
"""
RPC Helpers — Account Layout Decoding, Task Pool and Solana JSON-RPC Client
============================================================================

Consolidates low-level Solana interaction primitives used by
transaction_gatherer.py, position_reader.py and position_finder.py:

  • Little-endian field readers (u8, u16, i32, u64, u128, i128, pubkey)
  • Anchor discriminators (instruction and account)
  • TaskPool — bounded, paced fan-out with per-task failure isolation
  • JSON-RPC client (getSignaturesForAddress, getTransaction,
    getMultipleAccounts, getProgramAccounts)

References:
  Solana JSON-RPC : https://solana.com/docs/rpc
  Anchor IDL      : https://www.anchor-lang.com/docs/basics/idl

Terminology:
  • Discriminator: first 8 bytes of sha256("global:<ix>") / ("account:<Name>")
  • Q64:  2^64  — fixed-point denominator for sqrt_price and growth values
  • U128: 2^128 — wrap-around boundary for fee / reward growth
"""

import asyncio
import base64
import hashlib
import logging
import struct
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import base58
import httpx
from solders.pubkey import Pubkey

from orca_pnl.central_config import ACCOUNTS_CHUNK, config
from orca_pnl.errors import PnlError, RpcConnectionError, RpcError

logger = logging.getLogger(__name__)

# ── Layout Constants ────────────────────────────────────────────────────

DISCRIMINATOR_BYTES = 8
PUBKEY_BYTES = 32

# ── Whirlpool Fixed-Point Constants ─────────────────────────────────────
# Ref: https://github.com/orca-so/whirlpools math/src (Q64.64)

Q64 = 2 ** 64
U128 = 2 ** 128
I128_SIGN = 2 ** 127


# ── Field Readers ───────────────────────────────────────────────────────


def read_u8(data: bytes, offset: int) -> int:
    return data[offset]


def read_bool(data: bytes, offset: int) -> bool:
    return data[offset] != 0


def read_u16(data: bytes, offset: int) -> int:
    return struct.unpack_from("<H", data, offset)[0]


def read_i32(data: bytes, offset: int) -> int:
    return struct.unpack_from("<i", data, offset)[0]


def read_u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def read_u128(data: bytes, offset: int) -> int:
    """Unsigned 128-bit little-endian integer.

    >>> read_u128(bytes([1] + [0] * 15), 0)
    1
    """
    lo, hi = struct.unpack_from("<QQ", data, offset)
    return lo | (hi << 64)


def read_i128(data: bytes, offset: int) -> int:
    """Two's complement signed 128-bit little-endian integer."""
    value = read_u128(data, offset)
    if value >= I128_SIGN:
        return value - U128
    return value


def read_pubkey(data: bytes, offset: int) -> Pubkey:
    return Pubkey.from_bytes(bytes(data[offset:offset + PUBKEY_BYTES]))


def require_length(data: bytes, size: int, what: str) -> None:
    """Raise ValueError when an account/instruction payload is too short."""
    if len(data) < size:
        raise ValueError(f"{what}: expected at least {size} bytes, got {len(data)}")


# ── Anchor Discriminators ───────────────────────────────────────────────


def instruction_discriminator(name: str) -> bytes:
    """8-byte Anchor instruction discriminator for a snake_case name.

    >>> instruction_discriminator("close_position").hex()
    '7b86510031446262'
    """
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_BYTES]


def account_discriminator(name: str) -> bytes:
    """8-byte Anchor account discriminator for a CamelCase account type."""
    return hashlib.sha256(f"account:{name}".encode()).digest()[:DISCRIMINATOR_BYTES]


def decode_base58(data: str) -> bytes:
    return base58.b58decode(data)


def encode_base58(data: bytes) -> str:
    return base58.b58encode(data).decode()


def to_pubkey(value: Any) -> Pubkey:
    """Accept a Pubkey or its base58 string form."""
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(str(value))


# ── getProgramAccounts Filters ──────────────────────────────────────────


def data_size_filter(size: int) -> Dict[str, int]:
    return {"dataSize": size}


def memcmp_filter(offset: int, value: Pubkey) -> Dict[str, Dict[str, Any]]:
    return {"memcmp": {"offset": offset, "bytes": str(value)}}


# ── Task Pool ───────────────────────────────────────────────────────────


class TaskPool:
    """Bounded, paced fan-out for I/O-bound collaborator calls.

    At most ``concurrency`` tasks run at once and consecutive task starts
    are at least ``interval`` seconds apart (same pacing the CoinGecko and
    RPC providers expect).  ``map_settled`` isolates failures per item: a
    failed item is logged and omitted, the others complete normally.
    ``RpcConnectionError`` is the exception: it means the node is gone,
    so it propagates.
    """

    def __init__(self, concurrency: int = config.tasks.CONCURRENCY,
                 interval: float = config.tasks.INTERVAL_SECONDS):
        self._semaphore = asyncio.Semaphore(concurrency)
        self._interval = interval
        self._pace_lock = asyncio.Lock()
        self._last_start = 0.0

    async def _pace(self) -> None:
        async with self._pace_lock:
            wait = self._last_start + self._interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_start = time.monotonic()

    async def run(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run one coroutine function under the pool's limits."""
        async with self._semaphore:
            await self._pace()
            return await fn(*args)

    async def map_settled(self, fn: Callable[[Any], Awaitable[Any]],
                          items: Iterable[Any], label: str = "task") -> Dict[Any, Any]:
        """Apply ``fn`` to every item; return ``{item: result}`` for successes."""
        items = list(items)

        async def _one(item):
            try:
                return item, await self.run(fn, item), True
            except RpcConnectionError:
                raise
            except (PnlError, httpx.HTTPError, ValueError, KeyError) as e:
                logger.warning("%s failed for %s: %s", label, item, e)
                return item, None, False

        settled = await asyncio.gather(*(_one(item) for item in items))
        return {item: result for item, result, ok in settled if ok}


# ── JSON-RPC Client ─────────────────────────────────────────────────────


class SolanaRpcClient:
    """
    Minimal async Solana JSON-RPC client over httpx.

    Usage:
        async with SolanaRpcClient(rpc_url) as rpc:
            sigs = await rpc.get_signatures_for_address(address)

    Raises:
        RpcError: the node answered with a JSON-RPC error object or a
            non-2xx HTTP status.
        RpcConnectionError: the node could not be reached.
    """

    def __init__(self, rpc_url: str, timeout: int = config.rpc.TIMEOUT_SECONDS):
        self.rpc_url = rpc_url
        self.session = httpx.AsyncClient(timeout=timeout)
        self._next_id = 0

    async def close(self) -> None:
        await self.session.aclose()

    async def __aenter__(self) -> "SolanaRpcClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _payload(self, method: str, params: list) -> Dict[str, Any]:
        self._next_id += 1
        return {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}

    async def _post(self, payload: Any) -> Any:
        try:
            resp = await self.session.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise RpcConnectionError(f"Cannot reach RPC node {self.rpc_url}: {e}") from e
        if resp.status_code >= 400:
            raise RpcError(f"RPC HTTP {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    @staticmethod
    def _unwrap(result: Dict[str, Any]) -> Any:
        if "error" in result:
            error = result["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RpcError(f"RPC error: {message}")
        return result.get("result")

    async def call(self, method: str, params: list) -> Any:
        """Execute a single JSON-RPC request and return its ``result``."""
        return self._unwrap(await self._post(self._payload(method, params)))

    async def call_batch(self, requests: Sequence[Tuple[str, list]]) -> List[Any]:
        """Execute several requests in one HTTP round trip, results in order."""
        if not requests:
            return []
        payloads = [self._payload(method, params) for method, params in requests]
        order = {p["id"]: i for i, p in enumerate(payloads)}
        results = await self._post(payloads)
        if not isinstance(results, list):
            # Some nodes reject batches with a single error object
            self._unwrap(results)
            raise RpcError("RPC node does not support batch requests")

        ordered: List[Any] = [None] * len(payloads)
        for item in results:
            ordered[order[item["id"]]] = self._unwrap(item)
        return ordered

    # ── Signatures & Transactions ───────────────────────────────────

    async def get_signatures_for_address(self, address: Pubkey, before: Optional[str] = None,
                                         limit: int = 1000) -> List[Dict[str, Any]]:
        """Newest-first signature page for an address."""
        options: Dict[str, Any] = {"limit": limit, "commitment": config.rpc.COMMITMENT}
        if before:
            options["before"] = before
        return await self.call("getSignaturesForAddress", [str(address), options]) or []

    @staticmethod
    def _transaction_options() -> Dict[str, Any]:
        return {
            "encoding": "jsonParsed",
            "commitment": config.rpc.COMMITMENT,
            "maxSupportedTransactionVersion": config.rpc.MAX_SUPPORTED_TRANSACTION_VERSION,
        }

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Parsed transaction, or None when the node does not have it."""
        return await self.call("getTransaction", [signature, self._transaction_options()])

    async def get_transactions(self, signatures: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
        """Parsed transactions for several signatures (one batch request)."""
        options = self._transaction_options()
        return await self.call_batch(
            [("getTransaction", [signature, options]) for signature in signatures]
        )

    # ── Accounts ────────────────────────────────────────────────────

    @staticmethod
    def _account_data(account: Optional[Dict[str, Any]]) -> Optional[bytes]:
        if not account:
            return None
        data, encoding = account["data"]
        if encoding != "base64":
            raise RpcError(f"Unexpected account encoding: {encoding}")
        return base64.b64decode(data)

    async def get_multiple_accounts(self, addresses: Sequence[Pubkey]) -> Dict[Pubkey, Optional[bytes]]:
        """Raw account data per address; ``None`` for accounts that do not exist."""
        accounts: Dict[Pubkey, Optional[bytes]] = {}
        unique = list(dict.fromkeys(addresses))
        for start in range(0, len(unique), ACCOUNTS_CHUNK):
            chunk = unique[start:start + ACCOUNTS_CHUNK]
            result = await self.call(
                "getMultipleAccounts",
                [[str(a) for a in chunk], {"encoding": "base64", "commitment": config.rpc.COMMITMENT}],
            )
            for address, account in zip(chunk, result["value"]):
                accounts[address] = self._account_data(account)
        return accounts

    async def get_program_accounts(self, program_id: Pubkey,
                                   filters: Sequence[Dict[str, Any]]) -> List[Tuple[Pubkey, bytes]]:
        """All accounts owned by a program that match every filter."""
        result = await self.call(
            "getProgramAccounts",
            [
                str(program_id),
                {
                    "encoding": "base64",
                    "commitment": config.rpc.COMMITMENT,
                    "filters": list(filters),
                },
            ],
        )
        return [
            (Pubkey.from_string(item["pubkey"]), self._account_data(item["account"]))
            for item in result or []
        ]
