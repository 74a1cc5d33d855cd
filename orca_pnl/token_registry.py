"""
Token Registry — SPL mint metadata snapshot
============================================

Decimals of every mint the analysis touches, read once from the SPL
Token mint accounts and then frozen.  The native mint (wrapped SOL) is
always present because rent and transaction fees are priced in SOL.

SPL Mint layout (82 bytes):
  0   mint_authority  COption<Pubkey>  (36)
  36  supply          u64
  44  decimals        u8
  45  is_initialized  bool
  46  freeze_authority COption<Pubkey> (36)
Ref: https://github.com/solana-program/token/blob/main/program/src/state.rs
"""

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from solders.pubkey import Pubkey

from orca_pnl.central_config import NATIVE_DECIMALS, NATIVE_MINT
from orca_pnl.errors import MissingTokenError
from orca_pnl.rpc_helpers import read_u8, require_length

MINT_ACCOUNT_SIZE = 82
MINT_DECIMALS_OFFSET = 44

SOL_MINT = Pubkey.from_string(NATIVE_MINT)


@dataclass(frozen=True)
class TokenInfo:
    mint: Pubkey
    decimals: int


def decode_mint_decimals(data: bytes) -> int:
    require_length(data, MINT_DECIMALS_OFFSET + 1, "SPL mint")
    return read_u8(data, MINT_DECIMALS_OFFSET)


class TokenRegistry:
    """Read-only ``mint → TokenInfo`` lookup."""

    def __init__(self, tokens: Optional[Mapping[Pubkey, TokenInfo]] = None):
        merged: Dict[Pubkey, TokenInfo] = {SOL_MINT: TokenInfo(SOL_MINT, NATIVE_DECIMALS)}
        merged.update(tokens or {})
        self._tokens = MappingProxyType(merged)

    @classmethod
    def from_decimals(cls, decimals: Mapping[Pubkey, int]) -> "TokenRegistry":
        return cls({mint: TokenInfo(mint, d) for mint, d in decimals.items()})

    @classmethod
    def from_mint_accounts(cls, accounts: Mapping[Pubkey, Optional[bytes]]) -> "TokenRegistry":
        """Build from raw mint account data; missing accounts are left out."""
        return cls({
            mint: TokenInfo(mint, decode_mint_decimals(data))
            for mint, data in accounts.items()
            if data is not None
        })

    def __contains__(self, mint: Pubkey) -> bool:
        return mint in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def mints(self):
        return self._tokens.keys()

    def decimals(self, mint: Pubkey) -> int:
        try:
            return self._tokens[mint].decimals
        except KeyError:
            raise MissingTokenError(f"No token metadata for mint {mint}") from None

    def to_display(self, mint: Pubkey, raw_amount) -> Decimal:
        """Raw integer units → display units (``raw / 10**decimals``)."""
        return Decimal(raw_amount).scaleb(-self.decimals(mint))
