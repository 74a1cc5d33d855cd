"""
Project Configuration — RPC endpoints, program ids, version, constants
=======================================================================

Contains Solana / Orca Whirlpool constants, the CoinGecko API
configuration and project metadata.  Runtime settings (RPC URL, API key)
are read from the environment, optionally via a local ``.env`` file.

Sources:
  Orca Whirlpools program : https://github.com/orca-so/whirlpools
  CoinGecko API           : https://docs.coingecko.com/reference/introduction
"""

import os
import re
from dataclasses import dataclass
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from orca_pnl.errors import ConfigError

# Version: single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("orca-pnl")
except PackageNotFoundError:
    # Dev / CI: package not installed, read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "Orca PnL"


# ── Solana Programs & Mints ──────────────────────────────────────────────

WHIRLPOOL_PROGRAM_ID = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
ORCA_WHIRLPOOLS_CONFIG = "2LecshUwdy9xi7meFgHtFJQNSKk4KdTrcpvaB56dP2NQ"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
NATIVE_MINT = "So11111111111111111111111111111111111111112"
NATIVE_DECIMALS = 9
LAMPORTS_PER_SOL = 10 ** NATIVE_DECIMALS


# ── Rent (lamports) ──────────────────────────────────────────────────────
# Position account, position mint, position token account, metadata account.

POSITION_ACCOUNT_RENT = 2_394_240
POSITION_MINT_RENT = 1_461_600
POSITION_TOKEN_ACCOUNT_RENT = 2_039_280
POSITION_METADATA_RENT = 15_616_720

PAYABLE_RENT_LAMPORTS = (
    POSITION_ACCOUNT_RENT
    + POSITION_MINT_RENT
    + POSITION_TOKEN_ACCOUNT_RENT
    + POSITION_METADATA_RENT
)
PAYABLE_RENT_LAMPORTS_WITHOUT_METADATA = (
    POSITION_ACCOUNT_RENT + POSITION_MINT_RENT + POSITION_TOKEN_ACCOUNT_RENT
)
RECLAIMABLE_RENT_LAMPORTS = POSITION_ACCOUNT_RENT + POSITION_TOKEN_ACCOUNT_RENT
CLOSE_TRANSACTION_LAMPORTS = 10_000


# ── Analysis Thresholds ──────────────────────────────────────────────────

MATERIALITY_THRESHOLD_USD = 1  # deposits below this are not analyzed
TRANSACTIONS_LIMIT = 1000  # getSignaturesForAddress page size
TRANSACTION_BATCH_SIZE = 100  # getTransaction requests per JSON-RPC batch
ACCOUNTS_CHUNK = 100  # getMultipleAccounts hard limit


@dataclass(frozen=True)
class TaskPoolSettings:
    """Fan-out limits shared by every collaborator that talks to the network."""

    CONCURRENCY: int = 10
    INTERVAL_SECONDS: float = 0.2


@dataclass(frozen=True)
class CoinGeckoAPI:
    """CoinGecko API configuration (public and pro tiers)."""

    BASE_URL: str = "https://api.coingecko.com/api/v3"
    PRO_BASE_URL: str = "https://pro-api.coingecko.com/api/v3"
    PRO_KEY_PARAM: str = "x_cg_pro_api_key"

    COINS_LIST_ENDPOINT: str = "/coins/list"
    MARKET_CHART_RANGE_ENDPOINT: str = "/coins/{coin_id}/market_chart/range"

    # Platform key used in /coins/list?include_platform=true
    PLATFORM: str = "solana"
    VS_CURRENCY: str = "usd"

    TIMEOUT_SECONDS: int = 30

    # Hourly granularity is only returned for ranges within this window
    HOURLY_HISTORY_DAYS: int = 90
    MAX_RANGE_DAYS: int = 60

    # Rate limiting (requests per minute); the free tier is strict
    FREE_REQUESTS_PER_MINUTE: int = 25
    PRO_REQUESTS_PER_MINUTE: int = 400

    @classmethod
    def base_url(cls, pro: bool) -> str:
        """Base URL for the configured tier."""
        return cls.PRO_BASE_URL if pro else cls.BASE_URL

    @classmethod
    def get_coins_list_url(cls, pro: bool = False) -> str:
        """URL listing every coin with its platform contract addresses."""
        return f"{cls.base_url(pro)}{cls.COINS_LIST_ENDPOINT}"

    @classmethod
    def get_market_chart_range_url(cls, coin_id: str, pro: bool = False) -> str:
        """URL for a coin's USD price history within a time range."""
        endpoint = cls.MARKET_CHART_RANGE_ENDPOINT.format(coin_id=coin_id)
        return f"{cls.base_url(pro)}{endpoint}"


@dataclass(frozen=True)
class SolanaRPC:
    """JSON-RPC defaults."""

    TIMEOUT_SECONDS: int = 60
    COMMITMENT: str = "confirmed"
    MAX_SUPPORTED_TRANSACTION_VERSION: int = 0


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment."""

    rpc_url: Optional[str] = None
    coingecko_pro_api_key: Optional[str] = None
    full_address: bool = False

    def require_rpc_url(self) -> str:
        """RPC URL, or ConfigError when it was never configured."""
        if not self.rpc_url:
            raise ConfigError(
                "RPC_URL is not set — add it to the environment or a .env file"
            )
        return self.rpc_url


def load_settings(env_file: Optional[str] = None, full_address: bool = False) -> Settings:
    """Read ``RPC_URL`` and ``COINGECKO_PRO_API_KEY`` (``.env`` supported)."""
    load_dotenv(env_file)
    return Settings(
        rpc_url=os.getenv("RPC_URL") or None,
        coingecko_pro_api_key=os.getenv("COINGECKO_PRO_API_KEY") or None,
        full_address=full_address,
    )


# Unified configuration
class PnlConfig:
    """Unified configuration: network endpoints and fan-out limits."""

    coingecko = CoinGeckoAPI()
    rpc = SolanaRPC()
    tasks = TaskPoolSettings()


# Global instance
config = PnlConfig()
